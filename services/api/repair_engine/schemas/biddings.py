"""Schemas for owner-facing bidding and order endpoints (/v1/biddings, /v1/orders)."""

from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field

from repair_engine.schemas.evidence import VehicleInfo


class BiddingCreateRequest(BaseModel):
    """Request body for POST /v1/biddings."""

    vehicle: VehicleInfo = Field(default_factory=VehicleInfo)
    repair_items: list[str] = Field(alias="repairItems", default_factory=list, max_length=50)
    latitude: float = Field(ge=-90, le=90)
    longitude: float = Field(ge=-180, le=180)
    range_km: float = Field(alias="rangeKm", default=5.0, gt=0, le=100)
    is_insurance_accident: bool = Field(alias="isInsuranceAccident", default=False)
    # Output of a damage_analysis task, if the owner ran one.
    analysis: dict[str, Any] | None = None
    phone: str | None = Field(default=None, max_length=32)

    model_config = {"populate_by_name": True}


class BiddingOut(BaseModel):
    id: int
    status: str
    complexity_level: str = Field(alias="complexityLevel")
    vehicle: dict[str, Any]
    repair_items: list[str] = Field(alias="repairItems")
    range_km: float = Field(alias="rangeKm")
    selected_shop_id: int | None = Field(alias="selectedShopId", default=None)
    tier1_deadline: datetime | None = Field(alias="tier1Deadline", default=None)
    expires_at: datetime | None = Field(alias="expiresAt", default=None)
    created_at: datetime | None = Field(alias="createdAt", default=None)
    config_version: int = Field(alias="configVersion", default=0)

    model_config = {"populate_by_name": True}


class DistributionSummary(BaseModel):
    radius_km: float = Field(alias="radiusKm")
    assigned: int = 0
    tier1: list[int] = Field(default_factory=list)
    tier2: list[int] = Field(default_factory=list)
    tier3: list[int] = Field(default_factory=list)
    rejected: dict[str, int] = Field(default_factory=dict)

    model_config = {"populate_by_name": True}


class BiddingCreateResponse(BaseModel):
    bidding: BiddingOut
    distribution: DistributionSummary


class RankedQuote(BaseModel):
    """A quote in the owner's ranked list."""

    rank: int = Field(ge=1)
    quote_id: int = Field(alias="quoteId")
    shop_id: int = Field(alias="shopId")
    shop_name: str | None = Field(alias="shopName", default=None)
    amount: float
    items: list[dict[str, Any]] = Field(default_factory=list)
    duration_days: int | None = Field(alias="durationDays", default=None)
    warranty_months: int | None = Field(alias="warrantyMonths", default=None)
    remark: str | None = None
    score: float
    components: dict[str, float] = Field(default_factory=dict)
    boosts: list[str] = Field(default_factory=list)

    model_config = {"populate_by_name": True}


class RankedQuotesResponse(BaseModel):
    bidding_id: int = Field(alias="biddingId")
    quotes: list[RankedQuote]

    model_config = {"populate_by_name": True}


class SelectQuoteRequest(BaseModel):
    quote_id: int = Field(alias="quoteId")

    model_config = {"populate_by_name": True}


class EndBiddingResponse(BaseModel):
    bidding_id: int = Field(alias="biddingId")
    quotes_invalidated: int = Field(alias="quotesInvalidated")

    model_config = {"populate_by_name": True}


class OrderOut(BaseModel):
    id: int
    bidding_id: int = Field(alias="biddingId")
    quote_id: int = Field(alias="quoteId")
    user_id: int = Field(alias="userId")
    shop_id: int = Field(alias="shopId")
    status: str
    quoted_amount: float = Field(alias="quotedAmount")
    actual_amount: float | None = Field(alias="actualAmount", default=None)
    complexity_level: str = Field(alias="complexityLevel")
    order_tier: int = Field(alias="orderTier")
    commission_rate: float = Field(alias="commissionRate")
    commission_amount: float = Field(alias="commissionAmount")
    reward_preview: dict[str, Any] = Field(alias="rewardPreview")
    created_at: datetime | None = Field(alias="createdAt", default=None)
    accepted_at: datetime | None = Field(alias="acceptedAt", default=None)
    completed_at: datetime | None = Field(alias="completedAt", default=None)

    model_config = {"populate_by_name": True}


class OrderTransitionRequest(BaseModel):
    """Shop-side status change (accepted / awaiting_confirmation)."""

    status: str
    actual_amount: float | None = Field(alias="actualAmount", default=None, gt=0)

    model_config = {"populate_by_name": True}
