import logging
from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from services.db.connection import session_scope
from services.db.models import FlashSale, User, UserRole
from services.flashsales.service import FlashSaleService, discount_terms
from services.notification.engine import notification_engine
from services.utils.timezone import make_aware
from web.dependencies import require_role

router = APIRouter(prefix="/api/flash-sales", tags=["flash-sales"])
logger = logging.getLogger(__name__)

require_organizer = require_role(UserRole.ORGANIZER)


def sale_payload(sale: FlashSale) -> dict:
    return {
        "id": sale.id,
        "event_id": sale.event_id,
        "name": sale.name,
        "description": sale.description,
        "discount_percent": sale.discount_percent,
        "discount_amount": sale.discount_amount,
        "start_time": make_aware(sale.start_time).isoformat(),
        "end_time": make_aware(sale.end_time).isoformat(),
        "is_active": sale.is_active,
        "max_redemptions": sale.max_redemptions,
        "current_redemptions": sale.current_redemptions,
        "promo_code": sale.promo_code,
        "ticket_categories": sale.ticket_categories,
    }


class FlashSaleCreate(BaseModel):
    event_id: str
    name: str = Field(min_length=1, max_length=128)
    description: Optional[str] = None
    discount_percent: float = Field(gt=0, le=100)
    discount_amount: Optional[float] = Field(default=None, ge=0)
    start_time: datetime
    end_time: datetime
    max_redemptions: Optional[int] = Field(default=None, ge=1)
    promo_code: Optional[str] = Field(default=None, max_length=64)
    ticket_categories: List[str] = []


class FlashSaleUpdate(BaseModel):
    name: Optional[str] = None
    description: Optional[str] = None
    discount_percent: Optional[float] = Field(default=None, gt=0, le=100)
    discount_amount: Optional[float] = Field(default=None, ge=0)
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    is_active: Optional[bool] = None
    max_redemptions: Optional[int] = Field(default=None, ge=1)
    promo_code: Optional[str] = None
    ticket_categories: Optional[List[str]] = None


class PromoValidateRequest(BaseModel):
    event_id: str
    promo_code: str = Field(min_length=1)
    ticket_id: str


@router.post("", status_code=201)
async def create_flash_sale(body: FlashSaleCreate, user: User = Depends(require_organizer)):
    with session_scope() as db:
        sale = FlashSaleService(db).create(user, **body.model_dump())
        return {"flash_sale": sale_payload(sale)}


@router.get("/active")
async def list_active(event_id: Optional[str] = None):
    with session_scope() as db:
        return {"flash_sales": [sale_payload(s) for s in FlashSaleService(db).list_active(event_id)]}


@router.get("/event/{event_id}")
async def list_for_event(event_id: str, user: User = Depends(require_organizer)):
    with session_scope() as db:
        return {"flash_sales": [sale_payload(s) for s in FlashSaleService(db).list_for_event(event_id, user)]}


@router.post("/validate")
async def validate_promo(body: PromoValidateRequest):
    with session_scope() as db:
        terms = FlashSaleService(db).validate_promo_code(body.event_id, body.promo_code, body.ticket_id)
        return {"valid": True, "flash_sale": terms}


@router.get("/{sale_id}")
async def get_flash_sale(sale_id: str):
    with session_scope() as db:
        return {"flash_sale": discount_terms(FlashSaleService(db).get(sale_id))}


@router.patch("/{sale_id}")
async def update_flash_sale(sale_id: str, body: FlashSaleUpdate, user: User = Depends(require_organizer)):
    with session_scope() as db:
        sale = FlashSaleService(db).update(sale_id, user, **body.model_dump(exclude_unset=True))
        return {"flash_sale": sale_payload(sale)}


@router.delete("/{sale_id}")
async def delete_flash_sale(sale_id: str, user: User = Depends(require_organizer)):
    with session_scope() as db:
        FlashSaleService(db).delete(sale_id, user)
    return {"message": "Flash sale deleted successfully"}


@router.post("/{sale_id}/notify")
async def notify_flash_sale(sale_id: str, user: User = Depends(require_organizer)):
    with session_scope() as db:
        notified = FlashSaleService(db).notify_attendees(sale_id, user, notification_engine)
    return {"message": f"Notified {notified} attendees", "notified": notified}
