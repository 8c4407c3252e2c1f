"""
Subscription Lifecycle Module

Starts and stops image and camera info consumption according to how many
consumers are listening to the marker output, so no frame is processed
while nobody needs the result.
"""

import logging
import threading
from enum import Enum, auto
from typing import Callable, Dict, Optional, Protocol

from .errors import SubscriptionError
from .pipeline import PipelineState

logger = logging.getLogger(__name__)


class StreamHandle(Protocol):
    def shutdown(self) -> None: ...


# Opens one input stream subscription; raises SubscriptionError on failure
StreamOpener = Callable[[], StreamHandle]


class LifecycleState(Enum):
    """Input consumption states."""
    IDLE = auto()
    ACTIVE = auto()


class SubscriptionLifecycleManager:
    """
    Demand-driven subscription state machine.

    IDLE -> ACTIVE when the consumer count goes from zero to nonzero,
    ACTIVE -> IDLE when it drops back to zero. Notifications that do not
    cross zero change nothing, so a stream is never subscribed twice.
    Camera intrinsics survive deactivation.
    """

    def __init__(
        self,
        streams: Dict[str, StreamOpener],
        state: Optional[PipelineState] = None
    ):
        """
        Args:
            streams: Stream name -> function opening that subscription
            state: Shared node state whose active flag this manager owns
        """
        self.streams = dict(streams)
        self.state = state if state is not None else PipelineState()
        self._handles: Dict[str, StreamHandle] = {}
        self._lifecycle = LifecycleState.IDLE
        self._lock = threading.RLock()

        # Statistics
        self.activations = 0
        self.deactivations = 0

    @property
    def lifecycle_state(self) -> LifecycleState:
        with self._lock:
            return self._lifecycle

    @property
    def is_active(self) -> bool:
        return self.lifecycle_state == LifecycleState.ACTIVE

    def on_demand_changed(self, subscriber_count: int):
        """
        Handle a consumer count notification.

        Args:
            subscriber_count: Current number of marker consumers
        """
        with self._lock:
            if subscriber_count > 0:
                if self._lifecycle == LifecycleState.IDLE:
                    logger.debug("New Subscribers, Connecting to Input Image Topic.")
                    self._activate()
                elif len(self._handles) < len(self.streams):
                    self._reopen_missing()
            elif self._lifecycle == LifecycleState.ACTIVE:
                logger.debug("No Subscribers, Disconnecting from Input Image Topic.")
                self._deactivate()
            elif self._handles:
                # Leftovers from a failed rollback
                self._close_handles()

    def on_subscriber_status(self, topic) -> None:
        """Connect/disconnect callback for the marker topic."""
        # Count is read under the lock so a stale count cannot be applied
        # after a newer notification
        with self._lock:
            self.on_demand_changed(topic.get_num_subscribers())

    def shutdown(self):
        """Close all input streams regardless of demand."""
        with self._lock:
            if self._handles or self._lifecycle == LifecycleState.ACTIVE:
                self._deactivate()

    def _open_missing(self):
        """Open every stream without a live handle; existing handles are reused."""
        for name, opener in self.streams.items():
            if name not in self._handles:
                self._handles[name] = opener()

    def _reopen_missing(self):
        # Streams closed by a partly failed teardown while demand came back
        try:
            self._open_missing()
        except SubscriptionError as e:
            logger.error(f"Failed to reopen input streams: {e}")
            return
        logger.info(f"Reopened input streams: {', '.join(self.streams)}")

    def _activate(self):
        try:
            self._open_missing()
        except SubscriptionError as e:
            logger.error(f"Failed to subscribe to input streams: {e}")
            self._close_handles()
            if self._handles:
                logger.error(
                    f"Could not roll back streams: {', '.join(self._handles)}"
                )
            return

        self._lifecycle = LifecycleState.ACTIVE
        self.state.active = True
        self.activations += 1
        logger.info(f"Activated input streams: {', '.join(self.streams)}")

    def _deactivate(self):
        if not self._close_handles():
            logger.error(
                f"Streams still open: {', '.join(self._handles)}; "
                "will retry on next demand change"
            )
            return

        self._lifecycle = LifecycleState.IDLE
        self.state.active = False
        self.deactivations += 1
        logger.info("Deactivated input streams")

    def _close_handles(self) -> bool:
        """Shut down every open handle; returns False if any failed."""
        ok = True
        for name in list(self._handles):
            try:
                self._handles[name].shutdown()
            except SubscriptionError as e:
                logger.error(f"Failed to unsubscribe from {name}: {e}")
                ok = False
                continue
            del self._handles[name]
        return ok
