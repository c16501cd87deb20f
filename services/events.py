"""Domain event sinks.

The billing core only announces what happened (``invoice.generated``,
``payment.recorded`` ...); delivering those announcements by e-mail, SMS or
push is the notification subsystem's job.  A sink is installed on the app as
``app.extensions["billing_event_sink"]``.
"""

from __future__ import annotations

import logging

from flask import current_app

logger = logging.getLogger(__name__)

EVENT_SINK_KEY = "billing_event_sink"


class EventSink:
    """Receives domain events after the transaction that produced them commits."""

    def emit(self, event_type: str, payload: dict) -> None:
        raise NotImplementedError


class LoggingEventSink(EventSink):
    def emit(self, event_type: str, payload: dict) -> None:
        logger.info("Event %s: %s", event_type, payload)


def get_event_sink() -> EventSink:
    sink = current_app.extensions.get(EVENT_SINK_KEY)
    if sink is None:
        sink = LoggingEventSink()
        current_app.extensions[EVENT_SINK_KEY] = sink
    return sink


def deliver_events(events: list[tuple[str, dict]]) -> None:
    """Hand committed events to the sink.

    The data is already committed at this point, so a failing sink is
    logged and the remaining events are still delivered.
    """
    if not events:
        return
    sink = get_event_sink()
    for event_type, payload in events:
        try:
            sink.emit(event_type, payload)
        except Exception:
            logger.exception("Event sink failed for %s", event_type)
