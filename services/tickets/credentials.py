"""
Redemption credentials: the signed payload behind a ticket's QR code.

The payload is a compact HS256 JWT carrying the ticket instance id, its
category id, the order id and the issue time. The gate scanner reads the QR
image and posts the text back; ``decode`` verifies the signature before any
field is trusted.
"""
import base64
import io
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

import jwt
import qrcode
from qrcode.constants import ERROR_CORRECT_H

from services.config import config
from services.errors import CredentialNotRecognized, InvalidCredentialFormat
from services.utils.timezone import make_aware

log = logging.getLogger(__name__)

ALGORITHM = "HS256"
REQUIRED_CLAIMS = ("pid", "tid", "oid", "iat")


@dataclass(frozen=True)
class CredentialPayload:
    purchase_id: str
    ticket_id: str
    order_id: str
    issued_at: datetime


def issued_at_seconds(dt: datetime) -> int:
    return int(make_aware(dt).timestamp())


class CredentialCodec:
    def __init__(self, secret: Optional[str] = None, issuer: Optional[str] = None):
        self.secret = secret or config.CREDENTIAL_SECRET
        self.issuer = issuer or config.CREDENTIAL_ISSUER

    def encode(self, purchase_id: str, ticket_id: str, order_id: str, issued_at: datetime) -> str:
        """Signed text payload for one ticket instance."""
        claims = {
            "pid": purchase_id,
            "tid": ticket_id,
            "oid": order_id,
            "iat": issued_at_seconds(issued_at),
            "iss": self.issuer,
        }
        return jwt.encode(claims, self.secret, algorithm=ALGORITHM)

    def decode(self, token: str) -> CredentialPayload:
        """Verify and unpack a scanned payload.

        Raises:
            InvalidCredentialFormat: not a credential at all (garbage, truncated,
                missing fields)
            CredentialNotRecognized: well-formed but not signed by us or issued
                by someone else
        """
        if not isinstance(token, str) or not token.strip():
            raise InvalidCredentialFormat()
        token = token.strip()

        try:
            claims = jwt.decode(
                token,
                self.secret,
                algorithms=[ALGORITHM],
                issuer=self.issuer,
                options={"require": list(REQUIRED_CLAIMS) + ["iss"]},
            )
        except jwt.InvalidSignatureError:
            log.warning("⚠️ Credential with bad signature scanned")
            raise CredentialNotRecognized()
        except (jwt.InvalidIssuerError, jwt.ImmatureSignatureError):
            raise CredentialNotRecognized()
        except jwt.InvalidTokenError as e:
            log.info(f"Malformed credential rejected: {e}")
            raise InvalidCredentialFormat()

        for claim in ("pid", "tid", "oid"):
            if not isinstance(claims.get(claim), str) or not claims[claim]:
                raise InvalidCredentialFormat()
        if not isinstance(claims["iat"], int):
            raise InvalidCredentialFormat()

        return CredentialPayload(
            purchase_id=claims["pid"],
            ticket_id=claims["tid"],
            order_id=claims["oid"],
            issued_at=datetime.fromtimestamp(claims["iat"], tz=timezone.utc),
        )

    @staticmethod
    def render(token: str) -> str:
        """PNG data URL of the QR code for ``token``, high error correction."""
        qr = qrcode.QRCode(version=None, error_correction=ERROR_CORRECT_H, box_size=10, border=2)
        qr.add_data(token)
        qr.make(fit=True)
        img = qr.make_image(fill_color="black", back_color="white")
        buf = io.BytesIO()
        img.save(buf, format="PNG")
        return "data:image/png;base64," + base64.b64encode(buf.getvalue()).decode()

    def issue(self, purchase) -> dict:
        """Token and image for a ``TicketPurchase`` row."""
        token = self.encode(purchase.id, purchase.ticket_id, purchase.order_id, purchase.credential_issued_at)
        return {
            "purchase_id": purchase.id,
            "ticket_id": purchase.ticket_id,
            "payload": token,
            "qr_code": self.render(token),
        }
