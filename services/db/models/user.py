# services/db/models/user.py
from typing import Optional

from sqlmodel import Field, SQLModel

from .base import SoftDelete, TimeStamped, UserRole, new_id


class User(TimeStamped, SoftDelete, SQLModel, table=True):
    """Account. Wallet users get a synthetic ``<address>@wallet`` email and no password."""
    user_id: str = Field(default_factory=new_id, primary_key=True, max_length=32)
    email: str = Field(index=True, unique=True, max_length=255)
    password_hash: Optional[str] = Field(default=None, max_length=256)
    full_name: Optional[str] = Field(default=None, max_length=128)
    phone_number: Optional[str] = Field(default=None, max_length=32)
    role: UserRole = Field(default=UserRole.ATTENDEE, index=True)
    wallet_address: Optional[str] = Field(default=None, unique=True, max_length=42)
    active: bool = Field(default=True)

    @property
    def display_name(self) -> str:
        return self.full_name or self.email.split("@")[0]
