"""
Repair diagnostics.

Every recovery attempt, fallback strategy and protocol-parser notice is
recorded as a ``RepairEvent``.  Events are written to the module logger with
the structured payload under ``extra["repair_event"]`` and, when supplied,
handed to an observer callable.  Neither path can change the value a
strategy returns.
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable

logger = logging.getLogger(__name__)

EVENT_REPAIR_ATTEMPT = "repair_attempt"
EVENT_REPAIR_RECOVERED = "repair_recovered"
EVENT_REPAIR_FAILED = "repair_failed"
EVENT_MANUAL_CALL_DISCARDED = "manual_call_discarded"
EVENT_MANUAL_CALL_REJECTED = "manual_call_rejected"

_PREVIEW_CHARS = 120


@dataclass(frozen=True)
class RepairEvent:
    """
    A single diagnostics record.

    Attributes
    ----------
    event_type:
        One of the ``EVENT_*`` constants.
    strategy:
        Name of the recovery strategy involved, if any.
    outcome:
        ``"hit"``, ``"miss"``, ``"recovered"``, ``"failed"`` or a parser
        notice such as ``"duplicate"`` / ``"sequential"``.
    backend:
        Provider id the text came from, when known.
    call_id:
        Tool-call id the text belongs to, when known.
    preview:
        The first characters of the input under repair.
    """

    event_type: str
    strategy: str | None = None
    outcome: str | None = None
    backend: str | None = None
    call_id: str | None = None
    preview: str = ""
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> dict[str, Any]:
        d = asdict(self)
        d["timestamp"] = self.timestamp.isoformat()
        return d


RepairObserver = Callable[[RepairEvent], None]


def preview(text: str) -> str:
    if len(text) <= _PREVIEW_CHARS:
        return text
    return text[:_PREVIEW_CHARS] + "..."


def emit(
    event: RepairEvent,
    observer: RepairObserver | None = None,
    *,
    level: int = logging.DEBUG,
) -> None:
    """Log *event* and forward it to *observer*."""
    logger.log(
        level,
        "%s strategy=%s outcome=%s backend=%s call_id=%s",
        event.event_type,
        event.strategy,
        event.outcome,
        event.backend,
        event.call_id,
        extra={"repair_event": event.to_dict()},
    )
    if observer is None:
        return
    try:
        observer(event)
    except Exception:
        logger.exception("Repair observer failed for %s", event.event_type)
