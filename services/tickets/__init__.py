"""Purchase, credentials and ticket lifecycle."""

from .credentials import CredentialCodec, CredentialPayload
from .lifecycle import TicketLifecycle
from .purchase import PurchaseService

__all__ = [
    "CredentialCodec",
    "CredentialPayload",
    "PurchaseService",
    "TicketLifecycle",
]
