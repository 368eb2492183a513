"""
Read-only endpoints for the UI poller: credit balance and order state.
"""
from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.orm import Session

from shopkit.db.session import get_db
from shopkit.models.order import CREDIT_APPLIED, ORDER_FAILED, Order
from shopkit.schemas.payments import BalanceOut, OrderStatusOut
from shopkit.services.payments.credits import CreditLedger


router = APIRouter(prefix="/api", tags=["credits"])


def order_ui_state(order: Order) -> str:
    """Never reports `credited` unless the credit was actually applied."""
    if order.status == ORDER_FAILED:
        return "failed"
    if not order.is_finalized():
        return "pending"
    if order.credit_status == CREDIT_APPLIED:
        return "credited"
    return "credit-pending"


@router.get("/credits", response_model=BalanceOut)
def get_credits(client_id: str = Query(..., alias="clientId", min_length=1), db: Session = Depends(get_db)) -> BalanceOut:
    balance = CreditLedger(db).get_balance(client_id)
    return BalanceOut(clientId=client_id, credits=balance or 0)


@router.get("/orders/{order_id}", response_model=OrderStatusOut)
def get_order_status(order_id: str, db: Session = Depends(get_db)) -> OrderStatusOut:
    order = db.query(Order).filter(Order.order_id == order_id).one_or_none()
    if not order:
        raise HTTPException(status_code=404, detail="Order not found")
    return OrderStatusOut(
        orderId=order.order_id,
        status=order.status,
        creditStatus=order.credit_status,
        credits=order.credits,
        state=order_ui_state(order),
    )
