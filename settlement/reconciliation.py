from sqlalchemy import func, select

from settlement.database import atomic
from settlement.errors import NotFoundError, StateConflictError
from settlement.logging_config import get_logger
from settlement.models import ReconciliationEntry
from settlement.utils import utcnow

log = get_logger(__name__)


def record_failure(db, order_number: str, product_id: int, action: str, error: str) -> ReconciliationEntry:
    """Queue a failed catalog side effect for an operator. Runs in its own transaction."""
    entry = ReconciliationEntry(order_number=order_number, product_id=product_id, action=action, error=error)
    with atomic(db):
        db.add(entry)
    log.error(f"[Order: {order_number}] Reconciliation needed for product {product_id} ({action}): {error}")
    return entry


def list_open(db, page: int = 1, limit: int = 20):
    query = select(ReconciliationEntry).where(ReconciliationEntry.resolved.is_(False))
    total = db.execute(select(func.count()).select_from(query.subquery())).scalar_one()
    entries = db.execute(
        query.order_by(ReconciliationEntry.created_at).offset((page - 1) * limit).limit(limit)
    ).scalars().all()
    return entries, total


def resolve(db, entry_id: int) -> ReconciliationEntry:
    entry = db.get(ReconciliationEntry, entry_id)
    if entry is None:
        raise NotFoundError("Reconciliation entry", entry_id)
    if entry.resolved:
        raise StateConflictError("Reconciliation entry already resolved")
    with atomic(db):
        entry.resolved = True
        entry.resolved_at = utcnow()
    log.info(f"[Order: {entry.order_number}] Reconciliation entry {entry.id} resolved.")
    return entry
