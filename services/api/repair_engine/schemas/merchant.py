"""Schemas for shop-facing endpoints (/v1/merchant)."""

from datetime import datetime

from pydantic import BaseModel, Field

from repair_engine.schemas.evidence import QuoteItem


class VisibleBidding(BaseModel):
    """A bidding as a shop sees it (no plate number, no owner identity)."""

    id: int
    tier: int = Field(ge=1, le=3)
    match_score: float = Field(alias="matchScore")
    complexity_level: str = Field(alias="complexityLevel")
    brand: str | None = None
    model: str | None = None
    repair_items: list[str] = Field(alias="repairItems", default_factory=list)
    is_insurance_accident: bool = Field(alias="isInsuranceAccident", default=False)
    created_at: datetime | None = Field(alias="createdAt", default=None)
    expires_at: datetime | None = Field(alias="expiresAt", default=None)

    model_config = {"populate_by_name": True}


class VisibleBiddingsResponse(BaseModel):
    biddings: list[VisibleBidding]


class QuoteRequest(BaseModel):
    amount: float = Field(gt=0)
    items: list[QuoteItem] = Field(default_factory=list, max_length=50)
    duration_days: int | None = Field(alias="durationDays", default=None, ge=0, le=365)
    warranty_months: int | None = Field(alias="warrantyMonths", default=None, ge=0, le=120)
    remark: str | None = Field(default=None, max_length=2000)

    model_config = {"populate_by_name": True}


class QuoteOut(BaseModel):
    id: int
    bidding_id: int = Field(alias="biddingId")
    shop_id: int = Field(alias="shopId")
    amount: float
    status: str
    created_at: datetime | None = Field(alias="createdAt", default=None)

    model_config = {"populate_by_name": True}


class MessageOut(BaseModel):
    id: int
    type: str
    title: str
    content: str
    related_id: str | None = Field(alias="relatedId", default=None)
    is_read: bool = Field(alias="isRead")
    created_at: datetime | None = Field(alias="createdAt", default=None)

    model_config = {"populate_by_name": True}


class InboxResponse(BaseModel):
    messages: list[MessageOut]
    unread_only: bool = Field(alias="unreadOnly")

    model_config = {"populate_by_name": True}


class MarkReadRequest(BaseModel):
    ids: list[int] = Field(min_length=1, max_length=200)


class MarkReadResponse(BaseModel):
    updated: int
