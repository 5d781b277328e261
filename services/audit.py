"""Best-effort audit trail."""
import logging
from typing import Any, Dict, Optional

from services.db.connection import session_scope
from services.db.models import AuditLog

log = logging.getLogger(__name__)


def log_audit(action: str, entity: str, entity_id: Optional[str] = None, user_id: Optional[str] = None,
              data: Optional[Dict[str, Any]] = None, ip_address: Optional[str] = None) -> bool:
    """Record an audit row in its own transaction.

    Never raises: an audit failure must not undo or fail the operation being
    audited, so call it after that operation has committed.
    """
    try:
        with session_scope() as session:
            session.add(AuditLog(
                action=action,
                entity=entity,
                entity_id=entity_id,
                user_id=user_id,
                ip_address=ip_address,
                data=data,
            ))
        return True
    except Exception as e:
        log.error(f"❌ Audit write failed ({action} {entity}:{entity_id}): {e}")
        return False
