from __future__ import annotations

import logging
from typing import Mapping, Protocol

from .models import NotificationType
from .store import AuditEntryRecord, BillingStore, NotificationRecord, _now_utc, new_record_id

logger = logging.getLogger(__name__)

_TITLES: dict[str, str] = {
    "INVOICE_PENDING": "Invoice Pending Approval",
    "INVOICE_APPROVED": "Invoice Approved",
    "INVOICE_REJECTED": "Invoice Rejected",
    "INVOICE_SENT": "Invoice Sent",
    "INVOICE_PAID": "Invoice Paid",
    "INVOICE_FOLLOW_UP": "Follow-up Sent",
    "PAYMENT_FAILED": "Payment Not Completed",
    "SYSTEM": "System Notice",
}


class NotificationSink(Protocol):
    def notify(self, target: str | None, event_type: NotificationType, payload: Mapping[str, str]) -> None: ...


class StoreNotificationSink:
    """Keeps notifications in the billing store for in-app display. A None target is a broadcast."""

    def __init__(self, store: BillingStore) -> None:
        self._store = store

    def notify(self, target: str | None, event_type: NotificationType, payload: Mapping[str, str]) -> None:
        values = {str(key): str(value) for key, value in payload.items()}
        self._store.insert_notification(
            NotificationRecord(
                notification_id=new_record_id("ntf"),
                target=target,
                event_type=event_type,
                title=values.pop("title", _TITLES.get(event_type, event_type)),
                message=values.pop("message", ""),
                invoice_id=values.get("invoice_id"),
                payload=values,
                created_at=_now_utc(),
            )
        )


def notify_safely(
    sink: NotificationSink,
    target: str | None,
    event_type: NotificationType,
    payload: Mapping[str, str],
) -> None:
    # Notification delivery never fails the operation that emitted it.
    try:
        sink.notify(target, event_type, payload)
    except Exception as exc:  # noqa: BLE001
        logger.warning("notification %s dropped: %s", event_type, exc)


class AuditTrail:
    def __init__(self, store: BillingStore) -> None:
        self._store = store

    def record(
        self,
        action: str,
        *,
        entity_type: str,
        entity_id: str,
        actor_id: str | None = None,
        details: Mapping[str, object] | None = None,
    ) -> None:
        entry = AuditEntryRecord(
            audit_id=new_record_id("aud"),
            action=action,
            entity_type=entity_type,
            entity_id=entity_id,
            actor_id=actor_id,
            details={str(key): str(value) for key, value in (details or {}).items() if value is not None},
            created_at=_now_utc(),
        )
        try:
            self._store.insert_audit_entry(entry)
        except Exception as exc:  # noqa: BLE001
            logger.warning("audit entry %s for %s %s dropped: %s", action, entity_type, entity_id, exc)
