"""Schemas for review, reading and like endpoints (/v1/reviews)."""

from pydantic import BaseModel, Field

from repair_engine.schemas.evidence import EvidenceBundle


class ReviewCreateRequest(BaseModel):
    order_id: int = Field(alias="orderId")
    rating: float = Field(ge=1, le=5)
    content: str = Field(default="", max_length=5000)
    evidence: EvidenceBundle = Field(default_factory=EvidenceBundle)

    model_config = {"populate_by_name": True}


class ReviewSubmitResponse(BaseModel):
    review_id: int = Field(alias="reviewId")
    quality_level: int = Field(alias="qualityLevel")
    reward_total: float = Field(alias="rewardTotal")
    immediate_amount: float = Field(alias="immediateAmount")
    immediate_tax: float = Field(alias="immediateTax")
    pending_keys: list[str] = Field(alias="pendingKeys", default_factory=list)
    reasons: list[str] = Field(default_factory=list)

    model_config = {"populate_by_name": True}


class ReadingRequest(BaseModel):
    """Effective seconds the reader spent on the review in one session."""

    seconds: float = Field(ge=0, le=86400)


class ReadingResponse(BaseModel):
    added: int
    total: int
    capped: bool


class LikeResponse(BaseModel):
    like_id: int = Field(alias="likeId")
    like_type: str = Field(alias="likeType")
    is_valid_for_bonus: bool = Field(alias="isValidForBonus")
    weight: float
    is_vehicle_match: bool = Field(alias="isVehicleMatch")

    model_config = {"populate_by_name": True}


class LikeStatsResponse(BaseModel):
    review_id: int = Field(alias="reviewId")
    like_count: int = Field(alias="likeCount")
    post_verify_count: int = Field(alias="postVerifyCount")
    valid_bonus_count: int = Field(alias="validBonusCount")
    has_owner_verify_badge: bool = Field(alias="hasOwnerVerifyBadge")

    model_config = {"populate_by_name": True}
