"""Order endpoints.

Owner (X-User-Id):
  GET  /v1/orders/{id}
  POST /v1/orders/{id}/complete   - confirm the repair is done
  POST /v1/orders/{id}/cancel
Shop (X-Shop-Id):
  POST /v1/orders/{id}/status     - accept, then mark awaiting confirmation
"""

from fastapi import APIRouter, Depends

from repair_engine.models import OrderStatus
from repair_engine.routes.biddings import order_out
from repair_engine.routes.deps import current_shop_id, current_user_id, raise_http
from repair_engine.schemas import OrderOut, OrderTransitionRequest
from repair_engine.services.biddings import advance_order, cancel_order, confirm_completion, get_order_for_user
from repair_engine.services.errors import EngineError, ValidationFailed
from repair_engine.stores.postgres import get_session

router = APIRouter()

_SHOP_TARGETS = {OrderStatus.ACCEPTED.value, OrderStatus.AWAITING_CONFIRMATION.value}


@router.get("/{order_id}", response_model=OrderOut)
async def get_order(order_id: int, user_id: int = Depends(current_user_id)) -> OrderOut:
    try:
        async with get_session() as session:
            order = await get_order_for_user(session, order_id, user_id)
    except EngineError as e:
        raise_http(e)
    return order_out(order)


@router.post("/{order_id}/status", response_model=OrderOut)
async def post_order_status(
    order_id: int,
    body: OrderTransitionRequest,
    shop_id: int = Depends(current_shop_id),
) -> OrderOut:
    try:
        if body.status not in _SHOP_TARGETS:
            raise ValidationFailed(
                "INVALID_STATUS",
                f"Shops can only move orders to {sorted(_SHOP_TARGETS)}",
                {"status": body.status},
            )
        async with get_session() as session:
            order = await advance_order(
                session,
                order_id,
                shop_id,
                OrderStatus(body.status),
                actual_amount=body.actual_amount,
            )
    except EngineError as e:
        raise_http(e)
    return order_out(order)


@router.post("/{order_id}/complete", response_model=OrderOut)
async def post_complete(order_id: int, user_id: int = Depends(current_user_id)) -> OrderOut:
    try:
        async with get_session() as session:
            order = await confirm_completion(session, order_id, user_id)
    except EngineError as e:
        raise_http(e)
    return order_out(order)


@router.post("/{order_id}/cancel", response_model=OrderOut)
async def post_cancel(order_id: int, user_id: int = Depends(current_user_id)) -> OrderOut:
    try:
        async with get_session() as session:
            order = await cancel_order(session, order_id, user_id)
    except EngineError as e:
        raise_http(e)
    return order_out(order)
