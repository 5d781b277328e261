"""Accounts and login sessions: email/password and wallet signature."""

import hashlib
import hmac
import logging
import secrets
import time
from typing import Optional, Tuple

from sqlmodel import Session, select

from services.config import config
from services.db.models import User, UserRole, UserSession
from services.errors import (
    DuplicateResource,
    InvalidCredentials,
    InvalidInput,
    InvalidMessageFormat,
    InvalidSignature,
    ReplayDetected,
    SignatureExpired,
)
from services.auth.replay_guard import ReplayGuard
from services.auth.wallet import build_message, is_address, verify_signature

log = logging.getLogger(__name__)

PBKDF2_ROUNDS = 120_000
WALLET_NONCE_SCOPE = "wallet"


def hash_password(password: str) -> str:
    """PBKDF2-SHA256, stored as ``salt:hash``."""
    salt = secrets.token_hex(16)
    hashed = hashlib.pbkdf2_hmac("sha256", password.encode(), salt.encode(), PBKDF2_ROUNDS).hex()
    return f"{salt}:{hashed}"


def verify_password(password: str, hashed: Optional[str]) -> bool:
    if not hashed or ":" not in hashed:
        return False
    salt, stored_hash = hashed.split(":", 1)
    candidate = hashlib.pbkdf2_hmac("sha256", password.encode(), salt.encode(), PBKDF2_ROUNDS).hex()
    return hmac.compare_digest(candidate, stored_hash)


class AuthService:
    def __init__(self, session: Session):
        self.session = session

    def _new_session(self, user: User, provider: str, ip_address: Optional[str],
                     user_agent: Optional[str]) -> UserSession:
        user_session = UserSession.create(
            user_id=user.user_id,
            provider=provider,
            expires_days=config.SESSION_DAYS,
            ip_address=ip_address,
            user_agent=user_agent,
        )
        self.session.add(user_session)
        self.session.commit()
        self.session.refresh(user_session)
        return user_session

    def get_user(self, user_id: str) -> Optional[User]:
        user = self.session.get(User, user_id)
        if not user or user.is_deleted or not user.active:
            return None
        return user

    def register(self, email: str, password: str, full_name: Optional[str] = None,
                 phone_number: Optional[str] = None, role: UserRole = UserRole.ATTENDEE) -> User:
        email = email.lower().strip()
        if not password or len(password) < 8:
            raise InvalidInput("Password must be at least 8 characters")
        if role == UserRole.ADMIN:
            raise InvalidInput("Admin accounts cannot be self-registered")
        if self.session.exec(select(User).where(User.email == email)).first():
            raise DuplicateResource("Email already registered")

        user = User(
            email=email,
            password_hash=hash_password(password),
            full_name=full_name,
            phone_number=phone_number,
            role=role,
        )
        self.session.add(user)
        self.session.commit()
        self.session.refresh(user)
        log.info(f"✨ [register] new user {email} -> {user.user_id} ({role.value})")
        return user

    def login(self, email: str, password: str, ip_address: Optional[str] = None,
              user_agent: Optional[str] = None) -> Tuple[User, UserSession]:
        email = email.lower().strip()
        user = self.session.exec(select(User).where(User.email == email)).first()
        if not user or user.is_deleted or not user.active or not verify_password(password, user.password_hash):
            raise InvalidCredentials()
        user_session = self._new_session(user, "email", ip_address, user_agent)
        log.info(f"🔐 [login] {email}")
        return user, user_session

    def wallet_login(self, address: str, signature: str, message: str, nonce: str, timestamp: int,
                     ip_address: Optional[str] = None, user_agent: Optional[str] = None) -> Tuple[User, UserSession]:
        """
        Log in with a signed message.

        Checks, in order: timestamp within WALLET_SIGNATURE_MAX_AGE, message
        is exactly the expected text, signature recovers ``address``, nonce
        not seen before. The nonce is only spent once everything else passed.
        """
        if not is_address(address):
            raise InvalidInput("Invalid wallet address")

        if abs(time.time() - int(timestamp)) > config.WALLET_SIGNATURE_MAX_AGE:
            raise SignatureExpired()
        if message != build_message(address, nonce, timestamp):
            raise InvalidMessageFormat()
        if not verify_signature(address, message, signature):
            log.warning(f"⚠️ Bad wallet signature for {address}")
            raise InvalidSignature()

        guard = ReplayGuard(self.session, scope=WALLET_NONCE_SCOPE)
        if not guard.consume(f"{address.lower()}:{nonce}", config.WALLET_NONCE_TTL):
            raise ReplayDetected()

        address = address.lower()
        user = self.session.exec(select(User).where(User.wallet_address == address)).first()
        if user is None:
            user = User(
                email=f"{address}@wallet",
                wallet_address=address,
                role=UserRole.ATTENDEE,
            )
            self.session.add(user)
            self.session.commit()
            self.session.refresh(user)
            log.info(f"✨ [register] wallet user {address} -> {user.user_id}")
        elif user.is_deleted or not user.active:
            raise InvalidCredentials("Account disabled")

        user_session = self._new_session(user, "wallet", ip_address, user_agent)
        log.info(f"🔐 [login] wallet {address}")
        return user, user_session

    def logout(self, session_id: str) -> bool:
        user_session = self.session.get(UserSession, session_id)
        if not user_session:
            return False
        self.session.delete(user_session)
        self.session.commit()
        return True
