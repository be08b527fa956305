"""Operator-managed complexity keywords.

Each row maps one or more keywords (separated by "|", "," or "，") to a
complexity level L1-L4. Stored in DB so the table can change without deploys.
"""

from datetime import datetime

from sqlalchemy import Boolean, DateTime, String, Text, func
from sqlalchemy.orm import Mapped, mapped_column

from repair_engine.stores.postgres import Base


class ComplexityKeyword(Base):
    __tablename__ = "complexity_keywords"

    id: Mapped[int] = mapped_column(primary_key=True)
    level: Mapped[str] = mapped_column(String(2), index=True)
    # Literal substrings (NOT regex), matched case-insensitively.
    keywords: Mapped[str] = mapped_column(Text)
    enabled: Mapped[bool] = mapped_column(Boolean, default=True, index=True)
    notes: Mapped[str | None] = mapped_column(Text)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
    )
