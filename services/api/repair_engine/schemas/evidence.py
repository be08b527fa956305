"""Tagged payloads stored as JSON columns.

Vehicle descriptions, quote items and review evidence arrive from clients as
free-form JSON. They are validated here at the boundary so malformed or
partially-shaped data never reaches scoring or reward math.
"""

from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator


class VehicleInfo(BaseModel):
    """Vehicle description attached to a bidding (immutable once stored)."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    plate_number: str | None = Field(default=None, alias="plateNumber", max_length=20)
    brand: str | None = Field(default=None, max_length=50)
    model: str | None = Field(default=None, max_length=100)
    # Official guide price of the vehicle, in currency units.
    vehicle_price: float | None = Field(default=None, alias="vehiclePrice", ge=0)

    @field_validator("plate_number")
    @classmethod
    def _normalize_plate(cls, v: str | None) -> str | None:
        if v is None:
            return None
        s = "".join(v.split()).upper()
        return s or None

    @field_validator("brand")
    @classmethod
    def _strip_brand(cls, v: str | None) -> str | None:
        if v is None:
            return None
        return v.strip() or None


class QuoteItem(BaseModel):
    """One line of a shop's itemized repair plan."""

    model_config = ConfigDict(extra="ignore")

    name: str = Field(min_length=1, max_length=200)
    damage_part: str | None = Field(default=None, max_length=100)
    repair_type: str | None = Field(default=None, max_length=100)
    parts_type: str | None = Field(default=None, max_length=50)
    price: float | None = Field(default=None, ge=0)

    def text_fragments(self) -> list[str]:
        return [s for s in (self.name, self.damage_part, self.repair_type) if s]


class EvidenceBundle(BaseModel):
    """Opaque upload references submitted with a review."""

    model_config = ConfigDict(extra="ignore")

    problem_photos: list[str] = Field(default_factory=list, max_length=30)
    completion_photos: list[str] = Field(default_factory=list, max_length=30)
    material_photos: list[str] = Field(default_factory=list, max_length=30)
    settlement_document: str | None = None

    @property
    def photo_count(self) -> int:
        return len(self.problem_photos) + len(self.completion_photos) + len(self.material_photos)

    @property
    def has_settlement_document(self) -> bool:
        return bool(self.settlement_document)


def load_vehicle_info(raw: Any) -> VehicleInfo:
    """Parse a stored vehicle payload, tolerating legacy empty values."""
    if not raw:
        return VehicleInfo()
    return VehicleInfo.model_validate(raw)


def load_quote_items(raw: Any) -> list[QuoteItem]:
    if not raw:
        return []
    return [QuoteItem.model_validate(x) for x in raw]


def load_evidence(raw: Any) -> EvidenceBundle:
    if not raw:
        return EvidenceBundle()
    return EvidenceBundle.model_validate(raw)
