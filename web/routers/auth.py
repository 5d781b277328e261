import logging
import secrets
import time
from typing import Annotated, Literal, Optional, Union

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, EmailStr, Field

from services.auth.service import AuthService
from services.auth.wallet import build_message, is_address
from services.captcha import verify_turnstile
from services.config import config
from services.db.connection import session_scope
from services.db.models import User, UserRole
from services.notification.engine import notification_engine
from web.dependencies import client_ip, get_current_user, limiter
from web.session import SESSION_COOKIE_NAME, delete_session, set_session_cookie

router = APIRouter(prefix="/auth", tags=["auth"])
logger = logging.getLogger(__name__)


def user_payload(user: User) -> dict:
    return {
        "user_id": user.user_id,
        "email": user.email,
        "full_name": user.full_name,
        "role": user.role.value,
        "wallet_address": user.wallet_address,
    }


# === Request Models ===

class RegisterRequest(BaseModel):
    email: EmailStr
    password: str = Field(min_length=8)
    full_name: Optional[str] = None
    phone_number: Optional[str] = None
    role: Literal["ATTENDEE", "ORGANIZER"] = "ATTENDEE"
    captcha_token: Optional[str] = None


class EmailLogin(BaseModel):
    method: Literal["email"]
    email: EmailStr
    password: str


class WalletLogin(BaseModel):
    method: Literal["wallet"]
    address: str
    signature: str
    message: str
    nonce: str = Field(min_length=8, max_length=128)
    timestamp: int


LoginRequest = Annotated[Union[EmailLogin, WalletLogin], Field(discriminator="method")]


# === Routes ===

@router.post("/register", status_code=201)
@limiter.limit(config.RATE_LIMIT_LOGIN)
async def register(req: RegisterRequest, request: Request):
    if not await verify_turnstile(req.captcha_token, client_ip(request)):
        return JSONResponse(status_code=400, content={"error": "Captcha verification failed"})

    with session_scope() as db:
        auth = AuthService(db)
        user = auth.register(
            email=req.email,
            password=req.password,
            full_name=req.full_name,
            phone_number=req.phone_number,
            role=UserRole(req.role),
        )
        _, user_session = auth.login(req.email, req.password, client_ip(request), request.headers.get("user-agent"))
        payload = user_payload(user)
        session_id = user_session.session_id

    # Queued, never blocks the signup
    notification_engine.notify_welcome(payload["user_id"])

    resp = JSONResponse(status_code=201, content={"status": "ok", "user": payload})
    set_session_cookie(resp, session_id, request)
    return resp


@router.get("/wallet/message")
async def wallet_message(address: str):
    """Fresh nonce and the exact message the wallet has to sign."""
    if not is_address(address):
        return JSONResponse(status_code=400, content={"error": "Invalid wallet address"})
    nonce = secrets.token_hex(16)
    timestamp = int(time.time())
    return {
        "address": address.lower(),
        "nonce": nonce,
        "timestamp": timestamp,
        "message": build_message(address, nonce, timestamp),
    }


@router.post("/login")
@limiter.limit(config.RATE_LIMIT_LOGIN)
async def login(req: LoginRequest, request: Request):
    ip = client_ip(request)
    agent = request.headers.get("user-agent")

    with session_scope() as db:
        auth = AuthService(db)
        if isinstance(req, WalletLogin):
            user, user_session = auth.wallet_login(
                address=req.address,
                signature=req.signature,
                message=req.message,
                nonce=req.nonce,
                timestamp=req.timestamp,
                ip_address=ip,
                user_agent=agent,
            )
        else:
            user, user_session = auth.login(req.email, req.password, ip, agent)
        payload = user_payload(user)
        session_id = user_session.session_id

    resp = JSONResponse(content={"status": "ok", "user": payload})
    set_session_cookie(resp, session_id, request)
    return resp


@router.get("/me")
async def me(request: Request):
    session_data = get_current_user(request)
    if not session_data:
        return {"authenticated": False, "user": None}

    with session_scope() as db:
        user = db.get(User, session_data["user_id"])
        if not user:
            return {"authenticated": False, "user": None}
        return {"authenticated": True, "user": user_payload(user)}


@router.post("/logout")
async def logout(request: Request):
    session_id = request.cookies.get(SESSION_COOKIE_NAME)
    if session_id:
        delete_session(session_id)

    resp = JSONResponse(content={"status": "logged_out"})
    resp.delete_cookie(SESSION_COOKIE_NAME)
    return resp
