"""Merchant inbox."""

import logging
from datetime import datetime

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from repair_engine.models import MerchantMessage
from repair_engine.services.timeutil import utcnow

logger = logging.getLogger("uvicorn.error")

MSG_BIDDING = "bidding"
MSG_ORDER = "order"
MSG_APPEAL = "appeal"
MSG_AUDIT = "audit"


async def send_merchant_message(
    session: AsyncSession,
    shop_id: int,
    msg_type: str,
    title: str,
    content: str,
    related_id: int | str | None = None,
    now: datetime | None = None,
) -> MerchantMessage:
    msg = MerchantMessage(
        shop_id=shop_id,
        type=msg_type,
        title=title,
        content=content,
        related_id=str(related_id) if related_id is not None else None,
        created_at=now or utcnow(),
    )
    session.add(msg)
    await session.flush()
    logger.info(f"[inbox] shop_id={shop_id} type={msg_type} related_id={related_id}")
    return msg


async def list_messages(
    session: AsyncSession,
    shop_id: int,
    *,
    unread_only: bool = False,
    limit: int = 50,
) -> list[MerchantMessage]:
    q = select(MerchantMessage).where(MerchantMessage.shop_id == shop_id)
    if unread_only:
        q = q.where(MerchantMessage.is_read.is_(False))
    q = q.order_by(MerchantMessage.id.desc()).limit(limit)
    return list((await session.execute(q)).scalars().all())


async def mark_read(session: AsyncSession, shop_id: int, message_ids: list[int]) -> int:
    """Mark the shop's own messages as read; returns rows updated."""
    if not message_ids:
        return 0
    res = await session.execute(
        update(MerchantMessage)
        .where(MerchantMessage.shop_id == shop_id)
        .where(MerchantMessage.id.in_(message_ids))
        .values(is_read=True)
        .execution_options(synchronize_session=False)
    )
    return int(res.rowcount or 0)
