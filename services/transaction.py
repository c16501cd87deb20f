"""Transaction boundary for public billing operations.

Each public service function is decorated with :func:`transactional` and
maps to exactly one database transaction.  Private helpers only flush.
Domain events queued with :func:`queue_event` are handed to the event sink
after the commit succeeds and dropped on rollback.
"""

from __future__ import annotations

import logging
from functools import wraps

from extensions import db
from services.events import deliver_events

logger = logging.getLogger(__name__)

_PENDING_EVENTS = "pending_events"
_DEPTH = "transaction_depth"


def queue_event(event_type: str, payload: dict) -> None:
    """Queue a domain event for delivery once the current transaction commits."""
    db.session.info.setdefault(_PENDING_EVENTS, []).append((event_type, payload))


def discard_events() -> None:
    db.session.info.pop(_PENDING_EVENTS, None)


def transactional(f):
    """Commit on success, roll back on any exception.

    A call made while another transactional call is running joins the outer
    transaction instead of committing early.
    """

    @wraps(f)
    def decorated(*args, **kwargs):
        info = db.session.info
        depth = info.get(_DEPTH, 0)
        info[_DEPTH] = depth + 1
        try:
            result = f(*args, **kwargs)
            if depth == 0:
                db.session.commit()
        except Exception:
            if depth == 0:
                db.session.rollback()
                discard_events()
            raise
        finally:
            info[_DEPTH] = depth
        if depth == 0:
            deliver_events(info.pop(_PENDING_EVENTS, []))
        return result

    return decorated


def restart_transaction() -> None:
    """Roll back after a unique-constraint race so the winner's row can be re-read."""
    db.session.rollback()
    discard_events()
