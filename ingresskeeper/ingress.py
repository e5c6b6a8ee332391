"""Ingress event ingestion and reconciliation."""

import queue
import threading
from typing import Optional

from kubernetes.client.rest import ApiException
from tenacity import RetryCallState, Retrying, retry_if_exception
from urllib3.exceptions import HTTPError

from .errors import PersistenceError
from .kube import INGRESS, KubeClient
from .logging_config import get_logger, log_reconcile_event
from .models import BackoffConfig, RoutingConfiguration, WatchEvent
from .publisher import ConfigurationPublisher
from .resolver import RouteResolver
from .supervisor import ProcessSupervisor
from .watch import WatchLoop

logger = get_logger(__name__)

# How often a blocked queue operation rechecks the stop event.
POLL_INTERVAL = 0.5


def is_transient(error: BaseException) -> bool:
    """Whether a failed resolution is worth retrying.

    Server errors, throttling and transport failures are; any other 4xx is not.
    """
    if isinstance(error, ApiException):
        return not (400 <= (error.status or 0) < 500 and error.status != 429)
    return isinstance(error, (HTTPError, OSError))


def _ingress_name(retry_state: RetryCallState) -> Optional[str]:
    ingress = retry_state.args[0] if retry_state.args else {}
    return (ingress.get("metadata") or {}).get("name")


class IngressWatcher(WatchLoop):
    """Watch Ingress resources and hand every event to the reconciler queue."""

    kind = INGRESS

    def __init__(
        self,
        kube: KubeClient,
        events: "queue.Queue[WatchEvent]",
        namespace: str,
        stop_event: threading.Event,
        backoff: Optional[BackoffConfig] = None,
        ingress_name: Optional[str] = None,
    ) -> None:
        field_selector = f"metadata.name={ingress_name}" if ingress_name else None
        super().__init__(kube, namespace, stop_event, backoff, field_selector=field_selector)
        self._events = events

    def handle_event(self, event: WatchEvent) -> None:
        # Blocks while the reconciler is behind.
        while not self._stop_event.is_set():
            try:
                self._events.put(event, timeout=POLL_INTERVAL)
                return
            except queue.Full:
                logger.debug("Ingress event queue full, waiting", name=event.name)


class IngressReconciler(threading.Thread):
    """Apply ingress events in delivery order.

    ADDED resolves, publishes and then asks the supervisor to start the
    routing process. MODIFIED resolves and publishes only; the running
    process reloads the artifact itself. DELETED asks the supervisor to stop
    and publishes nothing.
    """

    def __init__(
        self,
        events: "queue.Queue[WatchEvent]",
        resolver: RouteResolver,
        publisher: ConfigurationPublisher,
        supervisor: ProcessSupervisor,
        stop_event: threading.Event,
        backoff: Optional[BackoffConfig] = None,
        ingress_name: Optional[str] = None,
    ) -> None:
        super().__init__(daemon=True, name="ingress-reconciler")
        self._events = events
        self._resolver = resolver
        self._publisher = publisher
        self._supervisor = supervisor
        self._stop_event = stop_event
        self._backoff = backoff or BackoffConfig()
        self._ingress_name = ingress_name

    def run(self) -> None:
        logger.info("Ingress reconciler started")
        while not self._stop_event.is_set():
            try:
                event = self._events.get(timeout=POLL_INTERVAL)
            except queue.Empty:
                continue
            try:
                self.process(event)
            except Exception:
                logger.exception("Failed to reconcile ingress event", event_type=event.type, name=event.name)
            finally:
                self._events.task_done()
        logger.info("Ingress reconciler stopped")

    def process(self, event: WatchEvent) -> None:
        """Apply a single ingress event."""
        if self._ingress_name and event.name != self._ingress_name:
            logger.debug("Ignoring event for other ingress", name=event.name)
            return

        if event.type == "ADDED":
            if self._publish(event):
                self._supervisor.request_start()
                log_reconcile_event(logger, "start_requested", ingress=event.name)
        elif event.type == "MODIFIED":
            self._publish(event)
        elif event.type == "DELETED":
            self._supervisor.request_stop()
            log_reconcile_event(logger, "stop_requested", ingress=event.name)
        else:
            logger.warning("Ignoring unexpected ingress event", event_type=event.type, name=event.name)

    def _publish(self, event: WatchEvent) -> bool:
        configuration = self._resolve(event)
        if configuration is None:
            return False
        try:
            self._publisher.publish(configuration)
        except PersistenceError as e:
            logger.error("Routing configuration not published, previous artifact kept",
                         ingress=event.name, error=str(e))
            return False
        log_reconcile_event(logger, "published", ingress=event.name,
                            mappings=len(configuration.ip_mappings))
        return True

    def _resolve(self, event: WatchEvent) -> Optional[RoutingConfiguration]:
        """Resolve the ingress, retrying transient API failures with backoff."""
        retrying = Retrying(
            retry=retry_if_exception(is_transient),
            wait=self._backoff.wait(),
            stop=self._stop_requested,
            sleep=self._stop_event.wait,
            before_sleep=self._before_sleep,
            retry_error_callback=self._give_up,
        )
        try:
            return retrying(self._resolver.resolve, event.object)
        except ApiException as e:
            logger.error("Ingress resolution rejected by API", ingress=event.name,
                         status=e.status, reason=e.reason)
            return None

    def _stop_requested(self, retry_state: RetryCallState) -> bool:
        return self._stop_event.is_set()

    def _before_sleep(self, retry_state: RetryCallState) -> None:
        logger.warning("Ingress resolution failed, retrying", ingress=_ingress_name(retry_state),
                       error=str(retry_state.outcome.exception()),
                       attempt=retry_state.attempt_number, retry_in=retry_state.next_action.sleep)

    def _give_up(self, retry_state: RetryCallState) -> None:
        logger.info("Ingress resolution abandoned, reconciler stopping",
                    ingress=_ingress_name(retry_state), attempts=retry_state.attempt_number)
