"""
Credit endpoints: balance, transaction history and the payment webhook.
"""

import json
import logging
import uuid

from fastapi import APIRouter, Depends, Query, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from chaptersmith.api import deps
from chaptersmith.core.config import settings
from chaptersmith.models.credit import TransactionType
from chaptersmith.models.user import User
from chaptersmith.schemas.credits import (
    CreditBalanceResponse,
    CreditTransactionItem,
    CreditTransactionList,
)
from chaptersmith.services.credits import CreditLedger
from chaptersmith.services.signatures import SignatureError, verify_webhook_signature

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get("/balance", response_model=CreditBalanceResponse)
async def get_balance(
    db: Session = Depends(deps.get_db),
    current_user: User = Depends(deps.get_current_user),
):
    info = CreditLedger(db).get_balance(current_user.id)
    return CreditBalanceResponse(balance=info.balance, free_credits=info.free_credits)


@router.get("/transactions", response_model=CreditTransactionList)
async def list_transactions(
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    db: Session = Depends(deps.get_db),
    current_user: User = Depends(deps.get_current_user),
):
    rows = CreditLedger(db).list_transactions(current_user.id, limit=limit, offset=offset)
    return CreditTransactionList(
        transactions=[CreditTransactionItem.model_validate(r) for r in rows]
    )


@router.post("/webhook")
async def payment_webhook(request: Request, db: Session = Depends(deps.get_db)):
    """
    Payment provider webhook.

    `order_created` grants credits and `order_refunded` removes them; both are
    keyed by the order id so replays are no-ops.
    """
    raw_body = await request.body()
    try:
        verify_webhook_signature(
            request.headers.get("X-Signature"), raw_body, settings.PAYMENT_WEBHOOK_SECRET
        )
    except SignatureError as e:
        logger.warning(f"[Webhook] {e}")
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST, content={"error": "Invalid signature"}
        )

    try:
        event = json.loads(raw_body)
    except ValueError:
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST, content={"error": "Invalid JSON"}
        )

    meta = event.get("meta") or {}
    data = event.get("data") or {}
    event_name = meta.get("event_name")

    if event_name == "order_created":
        _handle_order(db, meta, data, refund=False)
    elif event_name == "order_refunded":
        _handle_order(db, meta, data, refund=True)
    else:
        logger.info(f"[Webhook] Unhandled event type: {event_name}")

    return {"received": True}


def _handle_order(db: Session, meta: dict, data: dict, refund: bool) -> None:
    custom = meta.get("custom_data") or {}
    order_id = data.get("id")
    attributes = data.get("attributes") or {}

    try:
        user_id = uuid.UUID(str(custom["user_id"]))
        credits = int(custom["credits"])
    except (KeyError, TypeError, ValueError):
        logger.error(f"[Webhook] Missing custom data in order {order_id}")
        return
    if not order_id or credits <= 0:
        logger.error(f"[Webhook] Invalid order {order_id!r} ({credits} credits)")
        return

    ledger = CreditLedger(db)
    if refund:
        ledger.refund_credits(
            user_id,
            credits,
            str(order_id),
            metadata={
                "refundedAt": attributes.get("refunded_at"),
                "orderNumber": attributes.get("order_number"),
            },
        )
        logger.info(f"[Webhook] Credits refunded for user {user_id}: {credits}")
    else:
        ledger.add_credits(
            user_id,
            credits,
            TransactionType.PURCHASE,
            idempotency_key=str(order_id),
            metadata={
                "packageId": custom.get("package_id"),
                "orderNumber": attributes.get("order_number"),
                "total": attributes.get("total"),
                "currency": attributes.get("currency"),
            },
        )
        logger.info(f"[Webhook] Credits added for user {user_id}: {credits}")
