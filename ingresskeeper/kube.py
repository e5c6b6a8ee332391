"""Kubernetes control-plane client used by the watchers and the route resolver."""

import json
import threading
from typing import Any, Dict, Iterator, List, Optional, Set, Tuple

from kubernetes import client, config
from kubernetes.watch.watch import iter_resp_lines

from .logging_config import get_logger, log_function_entry, log_function_exit, log_k8s_operation
from .models import ControllerConfig, WatchEvent

logger = get_logger(__name__)

ENDPOINTS = "endpoints"
INGRESS = "ingress"


class KubeClient:
    """Thin wrapper over the Kubernetes API returning plain resource bodies.

    Resource bodies are the camelCase dicts the API server sends, so the
    watchers and the resolver never depend on the generated model classes.
    """

    def __init__(self, controller_config: ControllerConfig):
        log_function_entry(logger, "KubeClient.__init__", namespace=controller_config.namespace)
        self.controller_config = controller_config
        self._k8s_client: Optional[client.ApiClient] = None
        self._core_v1: Optional[client.CoreV1Api] = None
        self._networking_v1: Optional[client.NetworkingV1Api] = None
        self._streams: Set[Any] = set()
        self._streams_lock = threading.Lock()
        self._streams_closed = False

    def connect(self) -> None:
        """Initialize connection to the Kubernetes cluster."""
        log_function_entry(logger, "connect", namespace=self.controller_config.namespace)
        log_k8s_operation(logger, "connect", self.controller_config.namespace,
                          kubeconfig_path=self.controller_config.kubeconfig_path,
                          context=self.controller_config.context)

        try:
            if self.controller_config.kubeconfig_path:
                logger.debug("Loading kubeconfig from file",
                             kubeconfig_path=self.controller_config.kubeconfig_path,
                             context=self.controller_config.context)
                config.load_kube_config(
                    config_file=self.controller_config.kubeconfig_path,
                    context=self.controller_config.context
                )
            else:
                logger.debug("Loading in-cluster config")
                config.load_incluster_config()

            self._k8s_client = client.ApiClient()
            self._core_v1 = client.CoreV1Api(self._k8s_client)
            self._networking_v1 = client.NetworkingV1Api(self._k8s_client)

            logger.info("Successfully connected to cluster", namespace=self.controller_config.namespace)
            log_function_exit(logger, "connect", status="success")

        except Exception as e:
            logger.error("Failed to connect to cluster",
                         error=str(e),
                         kubeconfig_path=self.controller_config.kubeconfig_path,
                         context=self.controller_config.context)
            log_function_exit(logger, "connect", status="error", error=str(e))
            raise

    def _ensure_connected(self) -> None:
        if self._k8s_client is None:
            logger.debug("API client not initialized, connecting")
            self.connect()

    def _to_dict(self, obj: Any) -> Dict[str, Any]:
        if isinstance(obj, dict):
            return obj
        return self._k8s_client.sanitize_for_serialization(obj)

    def _list_function(self, kind: str):
        if kind == ENDPOINTS:
            return self._core_v1.list_namespaced_endpoints
        if kind == INGRESS:
            return self._networking_v1.list_namespaced_ingress
        raise ValueError(f"Unsupported resource kind: {kind}")

    def watch(self,
              kind: str,
              namespace: str,
              resource_version: Optional[str] = None,
              field_selector: Optional[str] = None) -> Iterator[WatchEvent]:
        """Open a watch stream and yield its events in delivery order.

        The stream ends when the server-side timeout expires or when
        ``stop_watches`` shuts its connection down. API failures propagate as
        ``ApiException``; dropped connections as urllib3 errors.
        """
        self._ensure_connected()
        list_function = self._list_function(kind)
        log_k8s_operation(logger, "watch", namespace, kind=kind,
                          resource_version=resource_version,
                          field_selector=field_selector)

        kwargs: Dict[str, Any] = {
            "namespace": namespace,
            "watch": True,
            "timeout_seconds": self.controller_config.watch_timeout_seconds,
            "allow_watch_bookmarks": True,
            "_preload_content": False,
        }
        if resource_version:
            kwargs["resource_version"] = resource_version
        if field_selector:
            kwargs["field_selector"] = field_selector

        response = list_function(**kwargs)
        with self._streams_lock:
            self._streams.add(response)
            closed = self._streams_closed
        try:
            if closed:
                return
            for line in iter_resp_lines(response):
                event = json.loads(line)
                yield WatchEvent(type=event["type"], object=event.get("object") or {})
        finally:
            with self._streams_lock:
                self._streams.discard(response)
            response.close()
            response.release_conn()

    def stop_watches(self) -> None:
        """Shut down every open watch connection, unblocking pending reads.

        Watches opened afterwards end as soon as they are established.
        """
        with self._streams_lock:
            self._streams_closed = True
            for response in self._streams:
                try:
                    response.shutdown()
                except (OSError, RuntimeError, ValueError) as e:
                    # The stream finished and released its connection meanwhile.
                    logger.debug("Watch connection already closed", error=str(e))
            count = len(self._streams)
        logger.debug("Stopped watch streams", count=count)

    def list_endpoints(self, namespace: str) -> Tuple[List[Dict[str, Any]], Optional[str]]:
        """List every Endpoints object in the namespace.

        Returns:
            The Endpoints bodies and the list's resourceVersion.
        """
        self._ensure_connected()
        log_k8s_operation(logger, "list_endpoints", namespace)
        body = self._to_dict(self._core_v1.list_namespaced_endpoints(
            namespace=namespace, _request_timeout=self.controller_config.request_timeout_seconds))
        items = body.get("items") or []
        resource_version = (body.get("metadata") or {}).get("resourceVersion")
        logger.debug("Listed endpoints", namespace=namespace, count=len(items),
                     resource_version=resource_version)
        return items, resource_version

    def read_service(self, namespace: str, name: str) -> Dict[str, Any]:
        """Read a Service definition by name."""
        self._ensure_connected()
        log_k8s_operation(logger, "read_service", namespace, service=name)
        return self._to_dict(self._core_v1.read_namespaced_service(
            name=name, namespace=namespace, _request_timeout=self.controller_config.request_timeout_seconds))

    def list_ingresses(self, namespace: str) -> List[Dict[str, Any]]:
        """List every Ingress in the namespace."""
        self._ensure_connected()
        log_k8s_operation(logger, "list_ingresses", namespace)
        body = self._to_dict(self._networking_v1.list_namespaced_ingress(
            namespace=namespace, _request_timeout=self.controller_config.request_timeout_seconds))
        return body.get("items") or []

    def disconnect(self) -> None:
        """Stop open watches and clean up the connection."""
        self.stop_watches()
        if self._k8s_client:
            self._k8s_client.close()
            self._k8s_client = None
