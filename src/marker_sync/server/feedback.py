"""Route client feedback to the callbacks registered on the registry."""

from __future__ import annotations

import logging
from typing import Optional

from marker_sync.protocol import FeedbackEvent

from .config import DebugPolicy
from .errors import StaleFeedback, TransportFailure
from .registry import FEEDBACK_CONFLICT, FEEDBACK_STALE, MarkerRegistry
from .transport import TransportAdapter

logger = logging.getLogger(__name__)


class FeedbackDispatcher:
    """Resolve and invoke feedback callbacks.

    Callbacks run on the caller's thread with no registry lock held, so they
    may mutate and publish the registry. Exceptions raised by a callback
    propagate out of ``dispatch``.
    """

    def __init__(
        self,
        registry: MarkerRegistry,
        *,
        conflict_window_s: float = 1.0,
        publish_on_feedback: bool = True,
        debug_policy: Optional[DebugPolicy] = None,
    ) -> None:
        self._registry = registry
        self._conflict_window_s = max(0.0, float(conflict_window_s))
        self._publish_on_feedback = bool(publish_on_feedback)
        policy = debug_policy or DebugPolicy()
        self._log_feedback = policy.logging.log_feedback

    def attach(self, transport: TransportAdapter) -> None:
        transport.on_feedback(self.handle)

    def dispatch(self, event: FeedbackEvent) -> bool:
        """Run the callback for *event*; return True if one ran."""

        if self._log_feedback:
            logger.info(
                "feedback: client=%s marker=%s control=%s type=%s",
                event.client_id,
                event.marker_name,
                event.control_name,
                event.event_type,
            )

        decision = self._registry.accept_feedback(event, conflict_window_s=self._conflict_window_s)
        if decision.status == FEEDBACK_STALE:
            logger.debug("dropping feedback: %s", StaleFeedback(event.marker_name))
            return False
        if decision.status == FEEDBACK_CONFLICT:
            logger.debug(
                "dropping feedback for '%s' from %s: another client is interacting",
                event.marker_name,
                event.client_id,
            )
            return False

        ran = False
        if decision.callback is not None:
            decision.callback(event)
            ran = True

        if self._publish_on_feedback and self._registry.has_pending():
            try:
                self._registry.publish()
            except TransportFailure as exc:
                logger.warning("publish after feedback on '%s' failed: %s", event.marker_name, exc)
        return ran

    def handle(self, event: FeedbackEvent) -> None:
        """Transport hook; callback errors are logged rather than raised."""

        try:
            self.dispatch(event)
        except Exception:
            logger.exception("feedback callback for marker '%s' failed", event.marker_name)


__all__ = ["FeedbackDispatcher"]
