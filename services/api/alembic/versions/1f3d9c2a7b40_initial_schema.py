"""initial_schema

Revision ID: 1f3d9c2a7b40
Revises:
Create Date: 2026-10-18
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = "1f3d9c2a7b40"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
    ]


def upgrade() -> None:
    # --- shops ---
    op.create_table(
        "shops",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("name", sa.String(length=200), nullable=False),
        sa.Column("status", sa.String(length=20), nullable=False),
        sa.Column("qualification_status", sa.String(length=20), nullable=False),
        sa.Column("qualification_class", sa.Integer(), nullable=True),
        sa.Column("is_brand_certified", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("service_categories", sa.JSON(), nullable=True),
        sa.Column("latitude", sa.Float(), nullable=True),
        sa.Column("longitude", sa.Float(), nullable=True),
        sa.Column("compliance_rate", sa.Float(), nullable=True),
        sa.Column("complaint_rate", sa.Float(), nullable=True),
        sa.Column("deviation_rate", sa.Float(), nullable=True),
        sa.Column("avg_response_minutes", sa.Float(), nullable=True),
        sa.Column("shop_score", sa.Float(), nullable=True),
        sa.Column("rating", sa.Float(), nullable=True),
        sa.Column("total_orders", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("version", sa.Integer(), nullable=False, server_default="0"),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(op.f("ix_shops_name"), "shops", ["name"], unique=False)
    op.create_index(op.f("ix_shops_status"), "shops", ["status"], unique=False)

    op.create_table(
        "shop_violations",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("shop_id", sa.Integer(), nullable=False),
        sa.Column("severity", sa.Integer(), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.ForeignKeyConstraint(["shop_id"], ["shops.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(op.f("ix_shop_violations_shop_id"), "shop_violations", ["shop_id"], unique=False)
    op.create_index(op.f("ix_shop_violations_created_at"), "shop_violations", ["created_at"], unique=False)

    # --- users ---
    op.create_table(
        "users",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("phone", sa.String(length=32), nullable=True),
        sa.Column("nickname", sa.String(length=100), nullable=True),
        sa.Column("balance", sa.Float(), nullable=False, server_default="0"),
        sa.Column("total_rebate", sa.Float(), nullable=False, server_default="0"),
        sa.Column("version", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(op.f("ix_users_phone"), "users", ["phone"], unique=False)

    op.create_table(
        "user_vehicles",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column("plate_number", sa.String(length=20), nullable=True),
        sa.Column("brand", sa.String(length=50), nullable=True),
        sa.Column("model", sa.String(length=100), nullable=True),
        sa.Column("is_default", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(op.f("ix_user_vehicles_user_id"), "user_vehicles", ["user_id"], unique=False)

    op.create_table(
        "blacklist_entries",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("value_type", sa.String(length=20), nullable=False),
        sa.Column("value", sa.String(length=100), nullable=False),
        sa.Column("reason", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("value_type", "value", name="uq_blacklist_type_value"),
    )
    op.create_index(op.f("ix_blacklist_entries_value"), "blacklist_entries", ["value"], unique=False)

    # --- operator configuration ---
    op.create_table(
        "complexity_keywords",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("level", sa.String(length=2), nullable=False),
        sa.Column("keywords", sa.Text(), nullable=False),
        sa.Column("enabled", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("notes", sa.Text(), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(op.f("ix_complexity_keywords_level"), "complexity_keywords", ["level"], unique=False)
    op.create_index(op.f("ix_complexity_keywords_enabled"), "complexity_keywords", ["enabled"], unique=False)

    op.create_table(
        "engine_config_versions",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("config", sa.JSON(), nullable=False),
        sa.Column("note", sa.Text(), nullable=True),
        sa.Column("created_by", sa.String(length=100), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )

    # --- biddings ---
    op.create_table(
        "biddings",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column("vehicle_info", sa.JSON(), nullable=False),
        sa.Column("repair_items", sa.JSON(), nullable=False),
        sa.Column("complexity_level", sa.String(length=2), nullable=False),
        sa.Column("is_insurance_accident", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("latitude", sa.Float(), nullable=False),
        sa.Column("longitude", sa.Float(), nullable=False),
        sa.Column("range_km", sa.Float(), nullable=False),
        sa.Column("status", sa.String(length=20), nullable=False),
        sa.Column("selected_shop_id", sa.Integer(), nullable=True),
        sa.Column("tier1_deadline", sa.DateTime(timezone=True), nullable=True),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("distributed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("config_version", sa.Integer(), nullable=False, server_default="0"),
        *_timestamps(),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"]),
        sa.ForeignKeyConstraint(["selected_shop_id"], ["shops.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(op.f("ix_biddings_user_id"), "biddings", ["user_id"], unique=False)
    op.create_index(op.f("ix_biddings_status"), "biddings", ["status"], unique=False)

    op.create_table(
        "bidding_assignments",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("bidding_id", sa.Integer(), nullable=False),
        sa.Column("shop_id", sa.Integer(), nullable=False),
        sa.Column("tier", sa.Integer(), nullable=False),
        sa.Column("match_score", sa.Float(), nullable=False),
        sa.Column("notified_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.ForeignKeyConstraint(["bidding_id"], ["biddings.id"]),
        sa.ForeignKeyConstraint(["shop_id"], ["shops.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("bidding_id", "shop_id", name="uq_bidding_assignment"),
    )
    op.create_index(op.f("ix_bidding_assignments_bidding_id"), "bidding_assignments", ["bidding_id"], unique=False)
    op.create_index(op.f("ix_bidding_assignments_shop_id"), "bidding_assignments", ["shop_id"], unique=False)

    op.create_table(
        "quotes",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("bidding_id", sa.Integer(), nullable=False),
        sa.Column("shop_id", sa.Integer(), nullable=False),
        sa.Column("amount", sa.Float(), nullable=False),
        sa.Column("items", sa.JSON(), nullable=False),
        sa.Column("duration_days", sa.Integer(), nullable=True),
        sa.Column("warranty_months", sa.Integer(), nullable=True),
        sa.Column("remark", sa.Text(), nullable=True),
        sa.Column("status", sa.String(length=20), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.ForeignKeyConstraint(["bidding_id"], ["biddings.id"]),
        sa.ForeignKeyConstraint(["shop_id"], ["shops.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("bidding_id", "shop_id", name="uq_quote_bidding_shop"),
    )
    op.create_index(op.f("ix_quotes_bidding_id"), "quotes", ["bidding_id"], unique=False)
    op.create_index(op.f("ix_quotes_shop_id"), "quotes", ["shop_id"], unique=False)
    op.create_index(op.f("ix_quotes_status"), "quotes", ["status"], unique=False)

    # --- orders ---
    op.create_table(
        "orders",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("bidding_id", sa.Integer(), nullable=False),
        sa.Column("quote_id", sa.Integer(), nullable=False),
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column("shop_id", sa.Integer(), nullable=False),
        sa.Column("quoted_amount", sa.Float(), nullable=False),
        sa.Column("actual_amount", sa.Float(), nullable=True),
        sa.Column("complexity_level", sa.String(length=2), nullable=False),
        sa.Column("vehicle_price_tier", sa.String(length=10), nullable=False),
        sa.Column("order_tier", sa.Integer(), nullable=False),
        sa.Column("commission_rate", sa.Float(), nullable=False),
        sa.Column("commission_amount", sa.Float(), nullable=False),
        sa.Column("is_insurance_accident", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("is_upgraded", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("reward_preview", sa.JSON(), nullable=False),
        sa.Column("status", sa.String(length=30), nullable=False),
        sa.Column("config_version", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.Column("accepted_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(["bidding_id"], ["biddings.id"]),
        sa.ForeignKeyConstraint(["quote_id"], ["quotes.id"]),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"]),
        sa.ForeignKeyConstraint(["shop_id"], ["shops.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("quote_id"),
    )
    op.create_index(op.f("ix_orders_bidding_id"), "orders", ["bidding_id"], unique=False)
    op.create_index(op.f("ix_orders_user_id"), "orders", ["user_id"], unique=False)
    op.create_index(op.f("ix_orders_shop_id"), "orders", ["shop_id"], unique=False)
    op.create_index(op.f("ix_orders_status"), "orders", ["status"], unique=False)
    op.create_index(op.f("ix_orders_created_at"), "orders", ["created_at"], unique=False)
    op.create_index(op.f("ix_orders_completed_at"), "orders", ["completed_at"], unique=False)

    # --- reviews ---
    op.create_table(
        "reviews",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("order_id", sa.Integer(), nullable=False),
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column("shop_id", sa.Integer(), nullable=False),
        sa.Column("rating", sa.Float(), nullable=False),
        sa.Column("content", sa.Text(), nullable=False),
        sa.Column("evidence", sa.JSON(), nullable=False),
        sa.Column("is_negative", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("is_valid", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("is_premium", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("content_quality_level", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("status", sa.String(length=20), nullable=False),
        sa.Column("fault_appeal_upheld", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("weight", sa.Float(), nullable=True),
        sa.Column("weight_frozen_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("reward_pre", sa.Float(), nullable=False, server_default="0"),
        sa.Column("reward_paid", sa.Float(), nullable=False, server_default="0"),
        sa.Column("config_version", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.ForeignKeyConstraint(["order_id"], ["orders.id"]),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"]),
        sa.ForeignKeyConstraint(["shop_id"], ["shops.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("order_id"),
    )
    op.create_index(op.f("ix_reviews_user_id"), "reviews", ["user_id"], unique=False)
    op.create_index(op.f("ix_reviews_shop_id"), "reviews", ["shop_id"], unique=False)
    op.create_index(op.f("ix_reviews_status"), "reviews", ["status"], unique=False)
    op.create_index(op.f("ix_reviews_created_at"), "reviews", ["created_at"], unique=False)

    op.create_table(
        "reading_sessions",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("review_id", sa.Integer(), nullable=False),
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column("effective_seconds", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("saw_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.ForeignKeyConstraint(["review_id"], ["reviews.id"]),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(op.f("ix_reading_sessions_review_id"), "reading_sessions", ["review_id"], unique=False)
    op.create_index(op.f("ix_reading_sessions_user_id"), "reading_sessions", ["user_id"], unique=False)
    op.create_index(op.f("ix_reading_sessions_saw_at"), "reading_sessions", ["saw_at"], unique=False)

    op.create_table(
        "review_likes",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("review_id", sa.Integer(), nullable=False),
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column("like_type", sa.String(length=20), nullable=False),
        sa.Column("is_valid_for_bonus", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("weight_coefficient", sa.Float(), nullable=False, server_default="0"),
        sa.Column("reading_seconds", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("is_vehicle_match", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.ForeignKeyConstraint(["review_id"], ["reviews.id"]),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("review_id", "user_id", name="uq_review_like_user"),
    )
    op.create_index(op.f("ix_review_likes_review_id"), "review_likes", ["review_id"], unique=False)
    op.create_index(op.f("ix_review_likes_user_id"), "review_likes", ["user_id"], unique=False)
    op.create_index(op.f("ix_review_likes_created_at"), "review_likes", ["created_at"], unique=False)

    # --- ledger ---
    op.create_table(
        "settlement_pending_entries",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("idempotency_key", sa.String(length=120), nullable=False),
        sa.Column("bonus_type", sa.String(length=30), nullable=False),
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column("review_id", sa.Integer(), nullable=True),
        sa.Column("order_id", sa.Integer(), nullable=True),
        sa.Column("amount_before_tax", sa.Float(), nullable=False),
        sa.Column("tax_deducted", sa.Float(), nullable=False, server_default="0"),
        sa.Column("amount_after_tax", sa.Float(), nullable=False),
        sa.Column("trigger_month", sa.String(length=7), nullable=False),
        sa.Column("calc_reason", sa.Text(), nullable=True),
        sa.Column("config_version", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("settled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("transaction_id", sa.Integer(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"]),
        sa.ForeignKeyConstraint(["review_id"], ["reviews.id"]),
        sa.ForeignKeyConstraint(["order_id"], ["orders.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("idempotency_key"),
    )
    op.create_index(
        op.f("ix_settlement_pending_entries_bonus_type"), "settlement_pending_entries", ["bonus_type"], unique=False
    )
    op.create_index(op.f("ix_settlement_pending_entries_user_id"), "settlement_pending_entries", ["user_id"], unique=False)
    op.create_index(
        op.f("ix_settlement_pending_entries_review_id"), "settlement_pending_entries", ["review_id"], unique=False
    )
    op.create_index(
        op.f("ix_settlement_pending_entries_order_id"), "settlement_pending_entries", ["order_id"], unique=False
    )
    op.create_index(
        op.f("ix_settlement_pending_entries_trigger_month"),
        "settlement_pending_entries",
        ["trigger_month"],
        unique=False,
    )

    op.create_table(
        "transactions",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column("type", sa.String(length=30), nullable=False),
        sa.Column("amount", sa.Float(), nullable=False),
        sa.Column("tax_deducted", sa.Float(), nullable=False, server_default="0"),
        sa.Column("review_id", sa.Integer(), nullable=True),
        sa.Column("order_id", sa.Integer(), nullable=True),
        sa.Column("settlement_month", sa.String(length=7), nullable=True),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"]),
        sa.ForeignKeyConstraint(["review_id"], ["reviews.id"]),
        sa.ForeignKeyConstraint(["order_id"], ["orders.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(op.f("ix_transactions_user_id"), "transactions", ["user_id"], unique=False)
    op.create_index(op.f("ix_transactions_type"), "transactions", ["type"], unique=False)
    op.create_index(op.f("ix_transactions_review_id"), "transactions", ["review_id"], unique=False)
    op.create_index(op.f("ix_transactions_order_id"), "transactions", ["order_id"], unique=False)
    op.create_index(op.f("ix_transactions_settlement_month"), "transactions", ["settlement_month"], unique=False)

    op.create_table(
        "settlement_logs",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("run_id", sa.String(length=36), nullable=False),
        sa.Column("settlement_month", sa.String(length=7), nullable=False),
        sa.Column("status", sa.String(length=20), nullable=False),
        sa.Column("summary", sa.JSON(), nullable=False),
        sa.Column("errors", sa.JSON(), nullable=False),
        sa.Column("config_version", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("run_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("run_id"),
    )
    op.create_index(op.f("ix_settlement_logs_settlement_month"), "settlement_logs", ["settlement_month"], unique=False)

    # --- inbox and AI queue ---
    op.create_table(
        "merchant_messages",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("shop_id", sa.Integer(), nullable=False),
        sa.Column("type", sa.String(length=30), nullable=False),
        sa.Column("title", sa.String(length=200), nullable=False),
        sa.Column("content", sa.Text(), nullable=False),
        sa.Column("related_id", sa.String(length=64), nullable=True),
        sa.Column("is_read", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.ForeignKeyConstraint(["shop_id"], ["shops.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(op.f("ix_merchant_messages_shop_id"), "merchant_messages", ["shop_id"], unique=False)
    op.create_index(op.f("ix_merchant_messages_type"), "merchant_messages", ["type"], unique=False)
    op.create_index(op.f("ix_merchant_messages_related_id"), "merchant_messages", ["related_id"], unique=False)

    op.create_table(
        "ai_tasks",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("kind", sa.String(length=30), nullable=False),
        sa.Column("status", sa.String(length=20), nullable=False),
        sa.Column("related_id", sa.Integer(), nullable=True),
        sa.Column("payload", sa.JSON(), nullable=False),
        sa.Column("result", sa.JSON(), nullable=True),
        sa.Column("attempts", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("max_attempts", sa.Integer(), nullable=False, server_default="3"),
        sa.Column("last_error", sa.Text(), nullable=True),
        *_timestamps(),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("finished_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(op.f("ix_ai_tasks_kind"), "ai_tasks", ["kind"], unique=False)
    op.create_index(op.f("ix_ai_tasks_status"), "ai_tasks", ["status"], unique=False)
    op.create_index(op.f("ix_ai_tasks_related_id"), "ai_tasks", ["related_id"], unique=False)


def downgrade() -> None:
    for table in (
        "ai_tasks",
        "merchant_messages",
        "settlement_logs",
        "transactions",
        "settlement_pending_entries",
        "review_likes",
        "reading_sessions",
        "reviews",
        "orders",
        "quotes",
        "bidding_assignments",
        "biddings",
        "engine_config_versions",
        "complexity_keywords",
        "blacklist_entries",
        "user_vehicles",
        "users",
        "shop_violations",
        "shops",
    ):
        op.drop_table(table)
