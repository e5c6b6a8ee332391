"""Long-lived watch loop with re-establishment and bounded exponential backoff."""

import threading
from enum import Enum
from typing import Optional

from kubernetes.client.rest import ApiException
from tenacity import RetryCallState, Retrying, retry_if_exception_type

from .errors import TransientWatchError
from .kube import KubeClient
from .logging_config import get_logger, log_watch_event
from .models import BackoffConfig, WatchEvent

logger = get_logger(__name__)

GONE = 410


class WatcherState(str, Enum):
    """Lifecycle of a watch loop."""

    IDLE = "idle"
    WATCHING = "watching"
    ERROR = "error"
    STOPPED = "stopped"


class WatchLoop(threading.Thread):
    """Consume a watch stream forever, re-establishing it whenever it ends.

    Subclasses set ``kind`` and implement ``handle_event``; they may override
    ``relist`` to seed their state from a full list before watching. Events
    of one stream are handled strictly in delivery order on this thread.

    Consecutive failed attempts back off exponentially. A stream that
    delivered events before failing counts as progress: it is reopened at
    once and the backoff starts over.
    """

    kind: str = ""

    def __init__(
        self,
        kube: KubeClient,
        namespace: str,
        stop_event: threading.Event,
        backoff: Optional[BackoffConfig] = None,
        field_selector: Optional[str] = None,
    ) -> None:
        super().__init__(daemon=True, name=f"{self.kind}-watch")
        self._kube = kube
        self.namespace = namespace
        self._stop_event = stop_event
        self._backoff = backoff or BackoffConfig()
        self._field_selector = field_selector
        self._resource_version: Optional[str] = None
        self._received = False
        self.state = WatcherState.IDLE

    def run(self) -> None:
        logger.info("Watch loop started", kind=self.kind, namespace=self.namespace)
        try:
            while not self._stop_event.is_set():
                self._retrying()(self._attempt)
        finally:
            self.state = WatcherState.STOPPED
            logger.info("Watch loop stopped", kind=self.kind, namespace=self.namespace)

    def _retrying(self) -> Retrying:
        return Retrying(
            retry=retry_if_exception_type(TransientWatchError),
            wait=self._backoff.wait(),
            stop=self._stop_requested,
            sleep=self._stop_event.wait,
            before_sleep=self._before_sleep,
            retry_error_callback=self._give_up,
        )

    def _stop_requested(self, retry_state: RetryCallState) -> bool:
        return self._stop_event.is_set()

    def _give_up(self, retry_state: RetryCallState) -> None:
        logger.debug("Watch retry abandoned, loop stopping", kind=self.kind,
                     attempts=retry_state.attempt_number)

    def _before_sleep(self, retry_state: RetryCallState) -> None:
        self.state = WatcherState.ERROR
        logger.warning("Watch stream failed, re-establishing",
                       kind=self.kind, error=str(retry_state.outcome.exception()),
                       attempt=retry_state.attempt_number, retry_in=retry_state.next_action.sleep)

    def _attempt(self) -> None:
        """One watch attempt with every failure reported as ``TransientWatchError``."""
        if self._stop_event.is_set():
            return
        self._received = False
        try:
            self.watch_once()
        except Exception as e:
            if isinstance(e, ApiException) and e.status == GONE:
                self._resource_version = None
            if self._stop_event.is_set():
                logger.debug("Watch stream closed while stopping", kind=self.kind, error=str(e))
                return
            if isinstance(e, TransientWatchError):
                error = e
            elif isinstance(e, ApiException):
                error = TransientWatchError(f"API error {e.status}: {e.reason}")
            else:
                # Connection resets and read timeouts surface as urllib3 errors.
                error = TransientWatchError(str(e))
            if self._received:
                logger.warning("Watch stream dropped after progress, reopening",
                               kind=self.kind, error=str(error))
                return
            if error is e:
                raise
            raise error from e

    def watch_once(self) -> None:
        """Run one watch request until the stream ends."""
        if self._resource_version is None:
            self._resource_version = self.relist()

        self.state = WatcherState.WATCHING
        events = self._kube.watch(
            self.kind,
            self.namespace,
            resource_version=self._resource_version,
            field_selector=self._field_selector,
        )
        for event in events:
            if self._stop_event.is_set():
                break
            log_watch_event(logger, self.kind, event.type, name=event.name,
                            resource_version=event.resource_version)
            if event.type == "ERROR":
                self._raise_for_error_event(event)
            if event.resource_version:
                self._resource_version = event.resource_version
            self._received = True
            if event.type == "BOOKMARK":
                continue
            try:
                self.handle_event(event)
            except Exception:
                logger.exception("Failed to handle watch event", kind=self.kind,
                                 event_type=event.type, name=event.name)

        logger.debug("Watch stream ended", kind=self.kind, resource_version=self._resource_version)

    def _raise_for_error_event(self, event: WatchEvent) -> None:
        code = event.object.get("code")
        if code == GONE:
            self._resource_version = None
        raise TransientWatchError(f"watch error event {code}: {event.object.get('message')}")

    def relist(self) -> Optional[str]:
        """Seed state from a full list; return the resourceVersion to watch from."""
        return None

    def handle_event(self, event: WatchEvent) -> None:
        raise NotImplementedError

    def stop(self) -> None:
        """Signal the loop to stop and unblock its stream."""
        self._stop_event.set()
        self._kube.stop_watches()
