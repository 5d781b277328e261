import logging
from typing import Literal, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from services.db.connection import session_scope
from services.db.models import RefundRequestStatus, User, UserRole
from services.notification.engine import notification_engine
from services.orders.service import OrderService
from services.utils.timezone import make_aware
from web.dependencies import require_role

router = APIRouter(prefix="/api/admin", tags=["admin"])
logger = logging.getLogger(__name__)

require_admin = require_role(UserRole.ADMIN)


class RefundReview(BaseModel):
    status: Literal["APPROVED", "REJECTED"]
    notes: Optional[str] = None


class MarkPaidRequest(BaseModel):
    gateway_tx_id: Optional[str] = None


@router.get("/refunds")
async def list_refunds(status: Optional[RefundRequestStatus] = None, page: int = 1, limit: int = 20,
                       user: User = Depends(require_admin)):
    with session_scope() as db:
        result = OrderService(db).list_refund_requests(status, page=max(page, 1), limit=min(max(limit, 1), 100))
        result["requests"] = [
            {
                "id": r.id,
                "order_id": r.order_id,
                "user_id": r.user_id,
                "reason": r.reason,
                "amount": r.amount,
                "status": r.status.value,
                "reviewed_by": r.reviewed_by,
                "reviewed_at": make_aware(r.reviewed_at).isoformat() if r.reviewed_at else None,
                "created_at": make_aware(r.created_at).isoformat(),
            }
            for r in result["requests"]
        ]
        return result


@router.post("/refunds/{request_id}/review")
async def review_refund(request_id: str, body: RefundReview, user: User = Depends(require_admin)):
    with session_scope() as db:
        request = OrderService(db).review_refund_request(
            request_id, user, approve=body.status == "APPROVED", notes=body.notes
        )
        return {
            "message": f"Refund request {request.status.value.lower()} successfully",
            "status": request.status.value,
        }


@router.post("/orders/{order_id}/mark-paid")
async def mark_paid(order_id: str, body: Optional[MarkPaidRequest] = None, user: User = Depends(require_admin)):
    with session_scope() as db:
        order = OrderService(db).mark_paid(order_id, body.gateway_tx_id if body else None)
        return {"order_id": order.id, "status": order.status.value}


@router.post("/orders/{order_id}/cancel")
async def cancel_order(order_id: str, user: User = Depends(require_admin)):
    with session_scope() as db:
        order = OrderService(db).cancel(order_id, user)
        return {"order_id": order.id, "status": order.status.value}


@router.post("/notifications/process")
async def process_notifications(limit: int = 50, user: User = Depends(require_admin)):
    sent = await notification_engine.process_queue(limit=limit)
    logger.info(f"🔔 [admin] {user.user_id} flushed send queue: {sent} delivered")
    return {"delivered": sent}
