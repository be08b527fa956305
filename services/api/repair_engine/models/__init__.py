"""SQLAlchemy ORM models.

Models represent database tables:
- shops / shop_violations: repair shops and their compliance history
- users / user_vehicles / blacklist_entries: owners and antifraud lists
- biddings / bidding_assignments / quotes: quote requests and distribution
- orders: accepted quotes with a frozen reward preview
- reviews / reading_sessions / review_likes: reputation and like evidence
- settlement_pending_entries / transactions / settlement_logs: payouts
- merchant_messages: merchant inbox
- complexity_keywords / engine_config_versions: operator configuration
- ai_tasks: durable vision-oracle work queue
"""

from repair_engine.models.ai_task import AiTask, AiTaskKind, AiTaskStatus
from repair_engine.models.bidding import Bidding, BiddingAssignment, BiddingStatus, Quote, QuoteStatus
from repair_engine.models.complexity_keyword import ComplexityKeyword
from repair_engine.models.engine_config import EngineConfigVersion
from repair_engine.models.ledger import (
    CAPPED_BONUS_TYPES,
    SettlementLog,
    SettlementPendingEntry,
    TransactionRecord,
    TransactionType,
)
from repair_engine.models.message import MerchantMessage
from repair_engine.models.order import Order, OrderStatus
from repair_engine.models.review import LikeType, ReadingSession, Review, ReviewLike, ReviewStatus
from repair_engine.models.shop import QualificationStatus, Shop, ShopStatus, ShopViolation
from repair_engine.models.user import BlacklistEntry, BlacklistType, User, UserVehicle

__all__ = [
    "AiTask",
    "AiTaskKind",
    "AiTaskStatus",
    "Bidding",
    "BiddingAssignment",
    "BiddingStatus",
    "BlacklistEntry",
    "BlacklistType",
    "CAPPED_BONUS_TYPES",
    "ComplexityKeyword",
    "EngineConfigVersion",
    "LikeType",
    "MerchantMessage",
    "Order",
    "OrderStatus",
    "QualificationStatus",
    "Quote",
    "QuoteStatus",
    "ReadingSession",
    "Review",
    "ReviewLike",
    "ReviewStatus",
    "SettlementLog",
    "SettlementPendingEntry",
    "Shop",
    "ShopStatus",
    "ShopViolation",
    "TransactionRecord",
    "TransactionType",
    "User",
    "UserVehicle",
]
