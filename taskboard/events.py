"""Post-commit domain events.

The store emits events only after its transaction has committed, so a
subscriber that fails (for example a LINE push that times out) cannot undo
the write that produced the event.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable, Dict, List

logger = logging.getLogger(__name__)

CHECKLIST_ASSIGNED = "checklist.assigned"


@dataclass(frozen=True)
class AssignmentEvent:
    item_id: str
    user_id: str
    external_chat_id: str
    card_title: str
    item_text: str


class EventBus:
    """Routes named events to subscriber callbacks."""

    def __init__(self) -> None:
        self.subscribers: Dict[str, List[Callable]] = {}

    def subscribe(self, event_type: str, callback: Callable) -> None:
        self.subscribers.setdefault(event_type, []).append(callback)

    def emit(self, event_type: str, payload) -> None:
        for callback in self.subscribers.get(event_type, []):
            try:
                callback(payload)
            except Exception:
                logger.exception("Subscriber for %s failed", event_type)
