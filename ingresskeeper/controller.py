"""Controller wiring the watch loops, resolver, publisher and supervisor together."""

import queue
import signal
import threading
import time
from typing import Any, Dict, Optional

from .cache import MembershipCache
from .endpoints import EndpointWatcher, membership_from_list
from .ingress import IngressReconciler, IngressWatcher
from .kube import KubeClient
from .logging_config import get_logger, log_function_entry, log_function_exit
from .models import ControllerConfig, RoutingConfiguration, WatchEvent
from .publisher import ConfigurationPublisher
from .resolver import RouteResolver
from .supervisor import ProcessSupervisor

logger = get_logger(__name__)


class IngressController:
    """Run the endpoint and ingress watch loops for one namespace.

    The endpoint loop keeps the membership cache current. The ingress loop
    feeds a reconciler that resolves routes, publishes the routing
    configuration and drives the routing process through the supervisor.
    """

    def __init__(
        self,
        config: ControllerConfig,
        kube: Optional[KubeClient] = None,
        publisher: Optional[ConfigurationPublisher] = None,
        supervisor: Optional[ProcessSupervisor] = None,
    ) -> None:
        self.config = config
        self.kube = kube or KubeClient(config)
        self.cache = MembershipCache()
        self.publisher = publisher or ConfigurationPublisher(config.config_path)
        self.supervisor = supervisor or ProcessSupervisor(config.command, config.working_dir, config.stop_timeout)
        self.resolver = RouteResolver(self.kube, self.cache, config.namespace, config.backend_protocol_annotation)

        self._stop_event = threading.Event()
        self._events: "queue.Queue[WatchEvent]" = queue.Queue(maxsize=config.event_queue_size)
        self._started = False
        self._stopped = False

        self.endpoint_watcher = EndpointWatcher(
            self.kube, self.cache, config.namespace, self._stop_event, config.backoff,
        )
        self.ingress_watcher = IngressWatcher(
            self.kube, self._events, config.namespace, self._stop_event, config.backoff,
            ingress_name=config.ingress_name,
        )
        self.reconciler = IngressReconciler(
            self._events, self.resolver, self.publisher, self.supervisor, self._stop_event,
            config.backoff, ingress_name=config.ingress_name,
        )

    def start(self) -> bool:
        """Start the watch loops and the reconciler.

        Startup faults are logged rather than raised. A failed initial
        connection is retried by the watch loops themselves.

        Returns:
            True if the loops are running.
        """
        log_function_entry(logger, "start", namespace=self.config.namespace,
                           ingress_name=self.config.ingress_name)
        if self._started:
            return True

        try:
            self.kube.connect()
        except Exception as e:
            logger.error("Initial cluster connection failed, watch loops will retry", error=str(e))

        try:
            self.reconciler.start()
            self.endpoint_watcher.start()
            self.ingress_watcher.start()
        except Exception as e:
            logger.error("Controller startup failed", error=str(e))
            self.stop()
            log_function_exit(logger, "start", status="error")
            return False

        self._started = True
        logger.info("Ingress controller started", namespace=self.config.namespace,
                    config_path=self.config.config_path)
        log_function_exit(logger, "start", status="success")
        return True

    def stop(self) -> None:
        """Close both watch streams, stop the routing process and wait for the loops to end.

        The routing process is stopped before the loops are joined.
        """
        if self._stopped:
            return
        self._stopped = True
        logger.info("Stopping ingress controller")

        self._stop_event.set()
        self.kube.stop_watches()
        self.supervisor.shutdown()

        deadline = time.monotonic() + self.config.stop_timeout
        for thread in (self.ingress_watcher, self.endpoint_watcher, self.reconciler):
            if thread.is_alive():
                thread.join(timeout=max(0.0, deadline - time.monotonic()))
                if thread.is_alive():
                    logger.warning("Thread did not stop in time", thread=thread.name)

        self.kube.disconnect()
        logger.info("Ingress controller stopped")

    def _handle_signal(self, signum, frame) -> None:
        logger.info("Shutdown signal received", signal=signum)
        self._stop_event.set()

    def run_forever(self) -> None:
        """Run until SIGINT or SIGTERM, then shut everything down."""
        signal.signal(signal.SIGINT, self._handle_signal)
        signal.signal(signal.SIGTERM, self._handle_signal)

        if self.start():
            while not self._stop_event.wait(1.0):
                pass
        self.stop()

    def status(self) -> Dict[str, Any]:
        """Snapshot of the controller's moving parts."""
        return {
            "endpoint_watcher": self.endpoint_watcher.state.value,
            "ingress_watcher": self.ingress_watcher.state.value,
            "cache_version": self.cache.version,
            "services": len(self.cache.snapshot()),
            "process": self.supervisor.status().model_dump(),
        }

    def resolve_once(self) -> Dict[str, RoutingConfiguration]:
        """Resolve every ingress in the namespace once, without watching.

        Returns:
            Routing configuration per ingress name.
        """
        namespace = self.config.namespace
        items, _ = self.kube.list_endpoints(namespace)
        self.cache.replace(membership_from_list(items))

        results: Dict[str, RoutingConfiguration] = {}
        for ingress in self.kube.list_ingresses(namespace):
            name = (ingress.get("metadata") or {}).get("name")
            if self.config.ingress_name and name != self.config.ingress_name:
                continue
            results[name] = self.resolver.resolve(ingress)

        logger.info("One-shot resolution completed", namespace=namespace, ingresses=len(results))
        return results
