import logging
from typing import Optional

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel, Field

from services.config import config
from services.db.connection import session_scope
from services.db.models import User, UserRole
from services.orders.service import OrderService
from services.tickets import PurchaseService, TicketLifecycle
from web.dependencies import client_ip, limiter, require_role, require_user

router = APIRouter(prefix="/api/tickets", tags=["tickets"])
logger = logging.getLogger(__name__)


class PurchaseRequest(BaseModel):
    ticket_id: str
    quantity: int
    promo_code: Optional[str] = None


class TransferRequest(BaseModel):
    recipient_email: str = Field(min_length=3, max_length=255)  # email, or a wallet address


class ValidateRequest(BaseModel):
    qr_data: str = Field(min_length=1)
    event_id: Optional[str] = None


class RefundRequestBody(BaseModel):
    reason: str = Field(min_length=3, max_length=1024)


@router.post("/purchase", status_code=201)
@limiter.limit(config.RATE_LIMIT_PURCHASE)
async def purchase(body: PurchaseRequest, request: Request, user: User = Depends(require_user)):
    with session_scope() as db:
        result = PurchaseService(db).purchase(
            user_id=user.user_id,
            ticket_id=body.ticket_id,
            quantity=body.quantity,
            promo_code=body.promo_code,
            ip_address=client_ip(request),
        )
    logger.info(f"🎟️ [purchase] {user.user_id} bought {body.quantity} x {body.ticket_id}")
    return result


@router.get("/my-tickets")
async def my_tickets(user: User = Depends(require_user)):
    with session_scope() as db:
        return {"orders": OrderService(db).list_my_tickets(user.user_id)}


@router.get("/{order_id}/qr")
async def get_qr(order_id: str, user: User = Depends(require_user)):
    with session_scope() as db:
        return OrderService(db).get_credentials(order_id, user.user_id)


@router.post("/{purchase_id}/transfer")
async def transfer(purchase_id: str, body: TransferRequest, user: User = Depends(require_user)):
    with session_scope() as db:
        return TicketLifecycle(db).transfer(purchase_id, user.user_id, body.recipient_email)


@router.post("/validate")
@limiter.limit(config.RATE_LIMIT_VALIDATE)
async def validate(body: ValidateRequest, request: Request,
                   user: User = Depends(require_role(UserRole.ORGANIZER))):
    with session_scope() as db:
        return TicketLifecycle(db).validate(body.qr_data, event_id=body.event_id, scanner=user)


@router.post("/{order_id}/refund", status_code=201)
async def request_refund(order_id: str, body: RefundRequestBody, user: User = Depends(require_user)):
    with session_scope() as db:
        refund = OrderService(db).request_refund(order_id, user, body.reason)
        return {
            "id": refund.id,
            "order_id": refund.order_id,
            "amount": refund.amount,
            "status": refund.status.value,
        }
