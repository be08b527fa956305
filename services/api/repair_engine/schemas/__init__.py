"""Pydantic schemas for API request/response validation."""

from repair_engine.schemas.biddings import (
    BiddingCreateRequest,
    BiddingCreateResponse,
    BiddingOut,
    DistributionSummary,
    EndBiddingResponse,
    OrderOut,
    OrderTransitionRequest,
    RankedQuote,
    RankedQuotesResponse,
    SelectQuoteRequest,
)
from repair_engine.schemas.common import ERROR_RESPONSES, ErrorDetail, ErrorResponse, error_body
from repair_engine.schemas.evidence import EvidenceBundle, QuoteItem, VehicleInfo
from repair_engine.schemas.merchant import (
    InboxResponse,
    MarkReadRequest,
    MarkReadResponse,
    MessageOut,
    QuoteOut,
    QuoteRequest,
    VisibleBidding,
    VisibleBiddingsResponse,
)
from repair_engine.schemas.reviews import (
    LikeResponse,
    LikeStatsResponse,
    ReadingRequest,
    ReadingResponse,
    ReviewCreateRequest,
    ReviewSubmitResponse,
)

__all__ = [
    "ERROR_RESPONSES",
    "BiddingCreateRequest",
    "BiddingCreateResponse",
    "BiddingOut",
    "DistributionSummary",
    "EndBiddingResponse",
    "ErrorDetail",
    "ErrorResponse",
    "EvidenceBundle",
    "InboxResponse",
    "LikeResponse",
    "LikeStatsResponse",
    "MarkReadRequest",
    "MarkReadResponse",
    "MessageOut",
    "OrderOut",
    "OrderTransitionRequest",
    "QuoteItem",
    "QuoteOut",
    "QuoteRequest",
    "RankedQuote",
    "RankedQuotesResponse",
    "ReadingRequest",
    "ReadingResponse",
    "ReviewCreateRequest",
    "ReviewSubmitResponse",
    "SelectQuoteRequest",
    "VehicleInfo",
    "VisibleBidding",
    "VisibleBiddingsResponse",
    "error_body",
]
