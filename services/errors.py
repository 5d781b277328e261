"""
Typed business errors raised by the service layer.

Services raise these; ``web_app`` turns them into ``{"error", "code"}`` JSON
with ``status_code``. Messages are safe to show to end users.
"""
from enum import Enum
from typing import Any, Dict, Optional


class ErrorCode(str, Enum):
    # validation
    INVALID_INPUT = "INVALID_INPUT"
    INVALID_QUANTITY = "INVALID_QUANTITY"
    QUANTITY_ABOVE_LIMIT = "QUANTITY_ABOVE_LIMIT"

    # conflict
    INSUFFICIENT_INVENTORY = "INSUFFICIENT_INVENTORY"
    INVENTORY_CAPACITY_EXCEEDED = "INVENTORY_CAPACITY_EXCEEDED"
    SALES_WINDOW_CLOSED = "SALES_WINDOW_CLOSED"
    PROMO_CODE_INVALID = "PROMO_CODE_INVALID"
    PROMO_CODE_EXHAUSTED = "PROMO_CODE_EXHAUSTED"
    PROMO_CODE_NOT_APPLICABLE = "PROMO_CODE_NOT_APPLICABLE"
    ALREADY_USED = "ALREADY_USED"
    NOT_TRANSFERABLE = "NOT_TRANSFERABLE"
    ORDER_NOT_PAID = "ORDER_NOT_PAID"
    PARTIALLY_USED = "PARTIALLY_USED"
    INVALID_ORDER_STATE = "INVALID_ORDER_STATE"
    DUPLICATE_RESOURCE = "DUPLICATE_RESOURCE"

    # credentials
    INVALID_CREDENTIAL_FORMAT = "INVALID_CREDENTIAL_FORMAT"
    CREDENTIAL_NOT_RECOGNIZED = "CREDENTIAL_NOT_RECOGNIZED"

    # not found
    CATEGORY_NOT_FOUND = "CATEGORY_NOT_FOUND"
    EVENT_NOT_FOUND = "EVENT_NOT_FOUND"
    ORDER_NOT_FOUND = "ORDER_NOT_FOUND"
    TICKET_NOT_FOUND = "TICKET_NOT_FOUND"
    USER_NOT_FOUND = "USER_NOT_FOUND"
    FLASH_SALE_NOT_FOUND = "FLASH_SALE_NOT_FOUND"
    REFUND_REQUEST_NOT_FOUND = "REFUND_REQUEST_NOT_FOUND"
    NOTIFICATION_NOT_FOUND = "NOTIFICATION_NOT_FOUND"

    # auth
    UNAUTHORIZED = "UNAUTHORIZED"
    INVALID_CREDENTIALS = "INVALID_CREDENTIALS"
    SIGNATURE_EXPIRED = "SIGNATURE_EXPIRED"
    REPLAY_DETECTED = "REPLAY_DETECTED"
    INVALID_SIGNATURE = "INVALID_SIGNATURE"
    INVALID_MESSAGE_FORMAT = "INVALID_MESSAGE_FORMAT"

    SERVICE_UNAVAILABLE = "SERVICE_UNAVAILABLE"


class ServiceError(Exception):
    status_code = 400
    default_code = ErrorCode.INVALID_INPUT
    default_message = "Request could not be processed"

    def __init__(self, message: Optional[str] = None, code: Optional[ErrorCode] = None,
                 context: Optional[Dict[str, Any]] = None):
        self.message = message or self.default_message
        self.code = code or self.default_code
        self.context = context or {}
        super().__init__(self.message)

    def __str__(self) -> str:
        return f"{self.code.value}: {self.message}"

    def to_dict(self) -> Dict[str, Any]:
        return {"error": self.message, "code": self.code.value}


# --- Taxonomy roots ---

class ValidationError(ServiceError):
    status_code = 400


class ConflictError(ServiceError):
    status_code = 400


class CredentialError(ServiceError):
    status_code = 400


class NotFoundError(ServiceError):
    status_code = 404
    default_message = "Not found"


class AuthorizationError(ServiceError):
    status_code = 403
    default_code = ErrorCode.UNAUTHORIZED
    default_message = "You are not allowed to do this"


class AuthenticationError(ServiceError):
    status_code = 401
    default_code = ErrorCode.INVALID_CREDENTIALS
    default_message = "Authentication failed"


class TransientInfrastructureError(ServiceError):
    status_code = 503
    default_code = ErrorCode.SERVICE_UNAVAILABLE
    default_message = "Service temporarily unavailable, please retry"


# --- Validation ---

class InvalidInput(ValidationError):
    default_code = ErrorCode.INVALID_INPUT
    default_message = "Invalid input"


class InvalidQuantity(ValidationError):
    default_code = ErrorCode.INVALID_QUANTITY
    default_message = "Quantity must be at least 1"


class QuantityAboveLimit(ValidationError):
    default_code = ErrorCode.QUANTITY_ABOVE_LIMIT
    default_message = "Quantity exceeds the per-purchase limit"


# --- Conflict ---

class InsufficientInventory(ConflictError):
    default_code = ErrorCode.INSUFFICIENT_INVENTORY
    default_message = "Not enough tickets available"

    def __init__(self, remaining: Optional[int] = None, message: Optional[str] = None):
        self.remaining = remaining
        if message is None and remaining is not None:
            if remaining == 0:
                message = "Sold out"
            else:
                noun = "ticket remains" if remaining == 1 else "tickets remain"
                message = f"Only {remaining} {noun}"
        super().__init__(message, context={"remaining": remaining})


class InventoryCapacityExceeded(ConflictError):
    default_code = ErrorCode.INVENTORY_CAPACITY_EXCEEDED
    default_message = "Capacity cannot go below the number of tickets already sold"


class SalesWindowClosed(ConflictError):
    default_code = ErrorCode.SALES_WINDOW_CLOSED
    default_message = "Ticket sales are not open"


class PromoCodeInvalid(ConflictError):
    default_code = ErrorCode.PROMO_CODE_INVALID
    default_message = "Invalid or expired promo code"


class PromoCodeExhausted(ConflictError):
    default_code = ErrorCode.PROMO_CODE_EXHAUSTED
    default_message = "Promo code has reached maximum redemptions"


class PromoCodeNotApplicable(ConflictError):
    default_code = ErrorCode.PROMO_CODE_NOT_APPLICABLE
    default_message = "Promo code not applicable to this ticket category"


class AlreadyUsed(ConflictError):
    default_code = ErrorCode.ALREADY_USED
    default_message = "Ticket has already been used"


class NotTransferable(ConflictError):
    default_code = ErrorCode.NOT_TRANSFERABLE
    default_message = "Ticket cannot be transferred"


class OrderNotPaid(ConflictError):
    default_code = ErrorCode.ORDER_NOT_PAID
    default_message = "Order has not been paid"


class PartiallyUsed(ConflictError):
    default_code = ErrorCode.PARTIALLY_USED
    default_message = "Some tickets in this order have already been used"


class InvalidOrderState(ConflictError):
    default_code = ErrorCode.INVALID_ORDER_STATE
    default_message = "Order is not in a state that allows this"


class DuplicateResource(ConflictError):
    default_code = ErrorCode.DUPLICATE_RESOURCE
    default_message = "Resource already exists"


# --- Credentials ---

class InvalidCredentialFormat(CredentialError):
    default_code = ErrorCode.INVALID_CREDENTIAL_FORMAT
    default_message = "Not a valid ticket code"


class CredentialNotRecognized(CredentialError):
    default_code = ErrorCode.CREDENTIAL_NOT_RECOGNIZED
    default_message = "Ticket not recognised for this event"


# --- Not found ---

class CategoryNotFound(NotFoundError):
    default_code = ErrorCode.CATEGORY_NOT_FOUND
    default_message = "Ticket category not found"


class EventNotFound(NotFoundError):
    default_code = ErrorCode.EVENT_NOT_FOUND
    default_message = "Event not found"


class OrderNotFound(NotFoundError):
    default_code = ErrorCode.ORDER_NOT_FOUND
    default_message = "Order not found"


class TicketNotFound(NotFoundError):
    default_code = ErrorCode.TICKET_NOT_FOUND
    default_message = "Ticket not found"


class UserNotFound(NotFoundError):
    default_code = ErrorCode.USER_NOT_FOUND
    default_message = "User not found"


class FlashSaleNotFound(NotFoundError):
    default_code = ErrorCode.FLASH_SALE_NOT_FOUND
    default_message = "Flash sale not found"


class RefundRequestNotFound(NotFoundError):
    default_code = ErrorCode.REFUND_REQUEST_NOT_FOUND
    default_message = "Refund request not found"


class NotificationNotFound(NotFoundError):
    default_code = ErrorCode.NOTIFICATION_NOT_FOUND
    default_message = "Notification not found"


# --- Auth ---

class Unauthorized(AuthorizationError):
    pass


class InvalidCredentials(AuthenticationError):
    default_message = "Invalid email or password"


class SignatureExpired(AuthenticationError):
    default_code = ErrorCode.SIGNATURE_EXPIRED
    default_message = "Signature expired"


class ReplayDetected(AuthenticationError):
    default_code = ErrorCode.REPLAY_DETECTED
    default_message = "Nonce already used"


class InvalidSignature(AuthenticationError):
    default_code = ErrorCode.INVALID_SIGNATURE
    default_message = "Invalid signature"


class InvalidMessageFormat(AuthenticationError):
    default_code = ErrorCode.INVALID_MESSAGE_FORMAT
    default_message = "Invalid message format"
