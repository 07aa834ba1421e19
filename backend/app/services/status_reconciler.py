from __future__ import annotations

import logging

from backend.app.models import StatusUpdateOutcome
from backend.app.services.classifier import StatusEvent
from backend.app.services.workflow import parse_delivery_status
from backend.app.store import InMemoryStore

logger = logging.getLogger("wa_crm.status")


def reconcile_status(*, event: StatusEvent, store: InMemoryStore) -> StatusUpdateOutcome:
    """Apply a delivery status only if it moves the message forward.

    The lookup is scoped to ``event.recipient_id`` so a provider id that
    belongs to another contact is never touched.
    """
    status = parse_delivery_status(event.status)
    if status is None:
        logger.info(
            "status_ignored reason=unknown_status status=%s provider_message_id=%s",
            event.status,
            event.provider_message_id,
        )
        return StatusUpdateOutcome.unknown_status

    outcome = store.apply_status_update(
        contact_id=event.recipient_id,
        provider_message_id=event.provider_message_id,
        status=status,
    )
    if outcome == StatusUpdateOutcome.applied:
        logger.info(
            "status_applied status=%s provider_message_id=%s contact=%s",
            status.value,
            event.provider_message_id,
            event.recipient_id,
        )
    else:
        logger.info(
            "status_ignored reason=%s status=%s provider_message_id=%s contact=%s",
            outcome.value,
            status.value,
            event.provider_message_id,
            event.recipient_id,
        )
    return outcome
