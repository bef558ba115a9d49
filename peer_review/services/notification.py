"""
Peer Review Programme
Notification Service — fire-and-forget event dispatch.

Lifecycle services call ``NotificationService.dispatch`` after their commit.
Delivery (email, in-app fan-out) belongs to external collaborators that
register a sink; a sink failure is logged and never propagates back into the
mutation that triggered it.

Usage:
    from peer_review.services.notification import NotificationService

    NotificationService.register_sink(my_sink)       # callable(event_type, payload)
    NotificationService.dispatch("review.status_changed", {...})
"""

import logging
from datetime import datetime, timezone

logger = logging.getLogger(__name__)

EVENT_TYPES = frozenset({
    "review.requested",
    "review.approval_decided",
    "review.status_changed",
    "review.fieldwork_completed",
    "team.member_assigned",
    "team.member_removed",
    "team.invitation_sent",
    "team.invitation_responded",
    "finding.created",
    "cap.status_changed",
    "evidence.submitted",
    "evidence.reviewed",
})


def _log_sink(event_type: str, payload: dict) -> None:
    logger.info("Event %s", event_type, extra={"event_type": event_type, "review_id": payload.get("review_id")})


class NotificationService:
    """Stateless dispatcher with a process-wide sink registry."""

    _sinks: list = [_log_sink]

    # ── Registry ──────────────────────────────────────────────────────────

    @staticmethod
    def register_sink(sink) -> None:
        """Add a callable ``sink(event_type, payload)``."""
        if sink not in NotificationService._sinks:
            NotificationService._sinks.append(sink)

    @staticmethod
    def unregister_sink(sink) -> None:
        if sink in NotificationService._sinks:
            NotificationService._sinks.remove(sink)

    @staticmethod
    def reset_sinks() -> None:
        """Restore the default (logging-only) sink list."""
        NotificationService._sinks[:] = [_log_sink]

    # ── Dispatch ──────────────────────────────────────────────────────────

    @staticmethod
    def dispatch(event_type: str, payload: dict) -> int:
        """
        Hand one event to every registered sink.

        Must be called after the triggering transaction committed.  Failures
        are logged per sink and swallowed.

        Returns:
            Number of sinks that accepted the event.
        """
        if event_type not in EVENT_TYPES:
            logger.warning("Dispatching unregistered event type %s", event_type)

        event = dict(payload)
        event.setdefault("occurred_at", datetime.now(timezone.utc).isoformat())

        delivered = 0
        for sink in list(NotificationService._sinks):
            try:
                sink(event_type, event)
                delivered += 1
            except Exception:
                logger.exception(
                    "Notification sink failed for %s", event_type,
                    extra={"event_type": event_type, "review_id": event.get("review_id")},
                )
        return delivered
