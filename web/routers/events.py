import logging
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from services.db.connection import session_scope
from services.db.models import Event, TicketCategory, TicketTier, User, UserRole
from services.events.service import EventService
from services.utils.timezone import make_aware
from web.dependencies import require_role

router = APIRouter(tags=["events"])
logger = logging.getLogger(__name__)

require_organizer = require_role(UserRole.ORGANIZER)


def _iso(dt: Optional[datetime]) -> Optional[str]:
    return make_aware(dt).isoformat() if dt else None


def category_payload(category: TicketCategory) -> dict:
    return {
        "id": category.id,
        "event_id": category.event_id,
        "tier": category.tier.value,
        "name": category.name,
        "description": category.description,
        "price": category.price,
        "total_quantity": category.total_quantity,
        "available_quantity": category.available_quantity,
        "max_per_purchase": category.max_per_purchase,
        "group_discount_enabled": category.group_discount_enabled,
        "group_min_size": category.group_min_size,
        "group_max_size": category.group_max_size,
        "group_discount_percent": category.group_discount_percent,
        "sales_start_time": _iso(category.sales_start_time),
        "sales_end_time": _iso(category.sales_end_time),
    }


def event_payload(event: Event) -> dict:
    return {
        "id": event.id,
        "organizer_id": event.organizer_id,
        "title": event.title,
        "description": event.description,
        "location": event.location,
        "start_time": _iso(event.start_time),
        "end_time": _iso(event.end_time),
        "status": event.status.value,
        "status_reason": event.status_reason,
        "original_start_time": _iso(event.original_start_time),
        "postponed_at": _iso(event.postponed_at),
        "cancelled_at": _iso(event.cancelled_at),
    }


class EventCreate(BaseModel):
    title: str = Field(min_length=1, max_length=256)
    description: str = ""
    location: str = ""
    start_time: datetime
    end_time: datetime


class EventPostpone(BaseModel):
    start_time: datetime
    end_time: datetime
    reason: str = Field(min_length=1, max_length=1024)


class EventCancel(BaseModel):
    reason: str = Field(min_length=1, max_length=1024)


class CategoryCreate(BaseModel):
    name: str = Field(min_length=1, max_length=128)
    tier: TicketTier = TicketTier.REGULAR
    description: Optional[str] = None
    price: float = Field(ge=0)
    total_quantity: int = Field(ge=0)
    max_per_purchase: Optional[int] = Field(default=None, ge=1)
    group_discount_enabled: bool = False
    group_min_size: Optional[int] = None
    group_max_size: Optional[int] = None
    group_discount_percent: Optional[float] = None
    sales_start_time: Optional[datetime] = None
    sales_end_time: Optional[datetime] = None


class CategoryUpdate(BaseModel):
    name: Optional[str] = None
    tier: Optional[TicketTier] = None
    description: Optional[str] = None
    price: Optional[float] = Field(default=None, ge=0)
    total_quantity: Optional[int] = Field(default=None, ge=0)
    max_per_purchase: Optional[int] = Field(default=None, ge=1)
    group_discount_enabled: Optional[bool] = None
    group_min_size: Optional[int] = None
    group_max_size: Optional[int] = None
    group_discount_percent: Optional[float] = None
    sales_start_time: Optional[datetime] = None
    sales_end_time: Optional[datetime] = None


@router.get("/api/events")
async def list_events(upcoming: bool = False):
    with session_scope() as db:
        events = EventService(db).list_events(upcoming=upcoming)
        return {"events": [event_payload(e) for e in events]}


@router.post("/api/events", status_code=201)
async def create_event(body: EventCreate, user: User = Depends(require_organizer)):
    with session_scope() as db:
        event = EventService(db).create_event(user, **body.model_dump())
        return {"event": event_payload(event)}


@router.post("/api/events/{event_id}/publish")
async def publish_event(event_id: str, user: User = Depends(require_organizer)):
    with session_scope() as db:
        event = EventService(db).publish_event(event_id, user)
        return {"event": event_payload(event)}


@router.post("/api/events/{event_id}/postpone")
async def postpone_event(event_id: str, body: EventPostpone, user: User = Depends(require_organizer)):
    with session_scope() as db:
        event, notified = EventService(db).postpone_event(event_id, user, **body.model_dump())
        return {"event": event_payload(event), "notified": notified}


@router.post("/api/events/{event_id}/cancel")
async def cancel_event(event_id: str, body: EventCancel, user: User = Depends(require_organizer)):
    with session_scope() as db:
        event, notified = EventService(db).cancel_event(event_id, user, body.reason)
        return {"event": event_payload(event), "notified": notified}


@router.get("/api/events/{event_id}")
async def get_event(event_id: str):
    with session_scope() as db:
        service = EventService(db)
        event = service.get_event(event_id)
        return {
            "event": event_payload(event),
            "categories": [category_payload(c) for c in service.list_categories(event_id)],
        }


@router.post("/api/events/{event_id}/categories", status_code=201)
async def create_category(event_id: str, body: CategoryCreate, user: User = Depends(require_organizer)):
    with session_scope() as db:
        category = EventService(db).create_category(event_id, user, **body.model_dump())
        logger.info(f"🎫 [catalogue] {user.user_id} added category {category.id} to {event_id}")
        return {"category": category_payload(category)}


@router.patch("/api/categories/{category_id}")
async def update_category(category_id: str, body: CategoryUpdate, user: User = Depends(require_organizer)):
    with session_scope() as db:
        changes = body.model_dump(exclude_unset=True)
        category = EventService(db).update_category(category_id, user, **changes)
        return {"category": category_payload(category)}
