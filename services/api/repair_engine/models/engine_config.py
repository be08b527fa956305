"""Versioned engine configuration snapshots.

Each row is an immutable snapshot of every business tunable. The highest id
is the active one; computations record the id they ran with so a historical
result can be reproduced.
"""

from datetime import datetime
from typing import Any

from sqlalchemy import JSON, DateTime, String, Text, func
from sqlalchemy.orm import Mapped, mapped_column

from repair_engine.stores.postgres import Base


class EngineConfigVersion(Base):
    __tablename__ = "engine_config_versions"

    id: Mapped[int] = mapped_column(primary_key=True)
    config: Mapped[dict[str, Any]] = mapped_column(JSON)
    note: Mapped[str | None] = mapped_column(Text)
    created_by: Mapped[str | None] = mapped_column(String(100))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
