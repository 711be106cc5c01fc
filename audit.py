"""Explicit before/after audit trail for user-driven mutations.

Services snapshot the entity themselves and hand the id over explicitly; nothing
here inspects objects it was not given.
"""

import json
import logging
from datetime import date, datetime
from enum import Enum
from typing import Any, Optional

from sqlalchemy.orm import Session

from models import AuditLog, Budget, RecurringTransaction, Transaction


logger = logging.getLogger(__name__)


def _plain(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, (date, datetime)):
        return value.isoformat()
    return value


def budget_snapshot(budget: Budget) -> dict[str, Any]:
    return {
        "id": budget.id,
        "name": budget.name,
        "category_id": budget.category_id,
        "limit_cents": budget.limit_cents,
        "spent_cents": budget.spent_cents,
        "start_date": _plain(budget.start_date),
        "end_date": _plain(budget.end_date),
        "status": _plain(budget.status),
        "threshold_percent": budget.threshold_percent,
    }


def transaction_snapshot(txn: Transaction) -> dict[str, Any]:
    return {
        "id": txn.id,
        "title": txn.title,
        "type": _plain(txn.type),
        "amount_cents": txn.amount_cents,
        "category_id": txn.category_id,
        "transaction_date": _plain(txn.transaction_date),
        "deleted": txn.deleted_at is not None,
    }


def template_snapshot(template: RecurringTransaction) -> dict[str, Any]:
    return {
        "id": template.id,
        "title": template.title,
        "amount_cents": template.amount_cents,
        "frequency": _plain(template.frequency),
        "end_date": _plain(template.end_date),
        "next_execution_date": _plain(template.next_execution_date),
        "status": _plain(template.status),
    }


def _dump(data: Optional[dict[str, Any]]) -> Optional[str]:
    if data is None:
        return None
    return json.dumps(data, sort_keys=True)


class AuditService:
    """Adds audit rows to the caller's session so they commit with the change."""

    def __init__(self, session: Session, actor_user_id: Optional[int] = None) -> None:
        self.session = session
        self.actor_user_id = actor_user_id

    def record(
        self,
        action: str,
        entity_type: str,
        entity_id: Optional[int],
        before: Optional[dict[str, Any]] = None,
        after: Optional[dict[str, Any]] = None,
    ) -> None:
        self.session.add(
            AuditLog(
                actor_user_id=self.actor_user_id,
                action=action,
                entity_type=entity_type,
                entity_id=entity_id,
                before_data=_dump(before),
                after_data=_dump(after),
            )
        )
        logger.debug(
            f"audit_recorded: action={action} entity_type={entity_type} "
            f"entity_id={entity_id}"
        )
