"""User, vehicle and blacklist models."""

from datetime import datetime
from enum import Enum

from sqlalchemy import DateTime, Float, ForeignKey, Integer, String, Text, UniqueConstraint, func
from sqlalchemy.orm import Mapped, mapped_column

from repair_engine.stores.postgres import Base


class User(Base):
    """Vehicle owner account."""

    __tablename__ = "users"

    id: Mapped[int] = mapped_column(primary_key=True)
    phone: Mapped[str | None] = mapped_column(String(32), index=True)
    nickname: Mapped[str | None] = mapped_column(String(100))

    balance: Mapped[float] = mapped_column(Float, default=0.0, server_default="0")
    total_rebate: Mapped[float] = mapped_column(Float, default=0.0, server_default="0")
    # Bumped on every balance write.
    version: Mapped[int] = mapped_column(Integer, default=0, server_default="0")

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class UserVehicle(Base):
    """A vehicle registered by its owner (used for like/vehicle matching)."""

    __tablename__ = "user_vehicles"

    id: Mapped[int] = mapped_column(primary_key=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id"), index=True)
    plate_number: Mapped[str | None] = mapped_column(String(20))
    brand: Mapped[str | None] = mapped_column(String(50))
    model: Mapped[str | None] = mapped_column(String(100))
    is_default: Mapped[bool] = mapped_column(default=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class BlacklistType(str, Enum):
    USER_ID = "user_id"
    PHONE = "phone"
    IP = "ip"


class BlacklistEntry(Base):
    __tablename__ = "blacklist_entries"
    __table_args__ = (UniqueConstraint("value_type", "value", name="uq_blacklist_type_value"),)

    id: Mapped[int] = mapped_column(primary_key=True)
    value_type: Mapped[str] = mapped_column(String(20))
    value: Mapped[str] = mapped_column(String(100), index=True)
    reason: Mapped[str | None] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
