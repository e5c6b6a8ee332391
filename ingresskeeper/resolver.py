"""Translate ingress rules plus live membership into a routing configuration."""

from typing import Any, Dict, List, Optional, Tuple, Union

from kubernetes.client.rest import ApiException

from .cache import MembershipCache
from .endpoints import membership_from_list
from .errors import BackendUnresolvedError
from .kube import KubeClient
from .logging_config import get_logger, log_function_entry, log_function_exit
from .models import IpMapping, RouteRule, RoutingConfiguration

logger = get_logger(__name__)

DEFAULT_SCHEME = "http"
DEFAULT_PATH = "/"

Port = Union[int, str]


def _backend_reference(backend: Dict[str, Any]) -> Optional[Tuple[str, Port]]:
    """Service name and port of an ingress backend, for v1 and legacy schemas."""
    service = backend.get("service")
    if service:
        port = service.get("port") or {}
        number = port.get("number")
        return service.get("name"), number if number is not None else port.get("name")
    if backend.get("serviceName"):
        return backend["serviceName"], backend.get("servicePort")
    return None


def _scheme(ingress: Dict[str, Any], annotation: str) -> str:
    annotations = (ingress.get("metadata") or {}).get("annotations") or {}
    if str(annotations.get(annotation, "")).upper() == "HTTPS":
        return "https"
    return DEFAULT_SCHEME


def extract_route_rules(ingress: Dict[str, Any], backend_protocol_annotation: str = "") -> List[RouteRule]:
    """Flatten an ingress body into one RouteRule per (path, backend) entry.

    Args:
        ingress: Ingress resource body.
        backend_protocol_annotation: Annotation that switches the scheme to https.

    Returns:
        Route rules in rule order, then path order.
    """
    spec = ingress.get("spec") or {}
    scheme = _scheme(ingress, backend_protocol_annotation) if backend_protocol_annotation else DEFAULT_SCHEME
    rules: List[RouteRule] = []

    for rule in spec.get("rules") or []:
        http = rule.get("http") or {}
        for entry in http.get("paths") or []:
            reference = _backend_reference(entry.get("backend") or {})
            if reference is None or not reference[0] or reference[1] is None:
                logger.warning("Skipping path without a service backend",
                               host=rule.get("host"), path=entry.get("path"))
                continue
            service_name, service_port = reference
            rules.append(RouteRule(
                path=entry.get("path") or DEFAULT_PATH,
                service_name=service_name,
                service_port=service_port,
                scheme=scheme,
                host=rule.get("host"),
            ))

    return rules


def target_port(service: Dict[str, Any], declared: Port) -> Port:
    """Map a declared service port to the port the backend pods listen on.

    Numeric declarations match the service port number, named ones match the
    port name. An omitted targetPort means the same value as the port.

    Raises:
        BackendUnresolvedError: If no service port matches.
    """
    name = (service.get("metadata") or {}).get("name", "")
    for port in (service.get("spec") or {}).get("ports") or []:
        if isinstance(declared, int):
            matches = port.get("port") == declared
        else:
            matches = port.get("name") == declared
        if matches:
            resolved = port.get("targetPort")
            return resolved if resolved is not None else port.get("port")
    raise BackendUnresolvedError(name, f"no service port matches {declared!r}")


class RouteResolver:
    """Resolve ingress bodies against the membership cache.

    Services missing from the cache are looked up directly against the API
    (cold path). The fetched Endpoints snapshot is written back to the cache,
    unless the endpoint watcher replaced it during the lookup, so later
    resolutions take the fast path.
    """

    def __init__(self, kube: KubeClient, cache: MembershipCache, namespace: str,
                 backend_protocol_annotation: str = "") -> None:
        self._kube = kube
        self._cache = cache
        self.namespace = namespace
        self.backend_protocol_annotation = backend_protocol_annotation

    def resolve(self, ingress: Dict[str, Any]) -> RoutingConfiguration:
        """Build the routing configuration for one ingress body.

        Entries whose backend cannot be resolved, or resolves to no
        addresses, are left out; everything else is still returned.
        """
        ingress_name = (ingress.get("metadata") or {}).get("name")
        log_function_entry(logger, "resolve", ingress=ingress_name)

        spec = ingress.get("spec") or {}
        default_backend = spec.get("defaultBackend") or spec.get("backend")
        if default_backend:
            # No catch-all policy is defined yet; the backend is reported and ignored.
            logger.warning("Default backend is not supported, no catch-all route emitted",
                           ingress=ingress_name, backend=_backend_reference(default_backend))

        rules = extract_route_rules(ingress, self.backend_protocol_annotation)
        snapshot = self._cache.snapshot()
        cold = _ColdPath()
        mappings: List[IpMapping] = []

        for rule in rules:
            if rule.service_name in snapshot:
                addresses = list(snapshot[rule.service_name])
                port = rule.service_port
            else:
                try:
                    addresses, port = self._lookup(rule, cold)
                except BackendUnresolvedError as e:
                    logger.warning("Skipping unresolved backend", ingress=ingress_name,
                                   path=rule.path, service=e.service_name, reason=e.reason)
                    continue

            if not addresses:
                logger.info("Skipping route without backend addresses", ingress=ingress_name,
                            path=rule.path, service=rule.service_name)
                continue

            mappings.append(IpMapping(ip_addresses=addresses, port=port, path=rule.path, scheme=rule.scheme))

        configuration = RoutingConfiguration(ip_mappings=mappings)
        log_function_exit(logger, "resolve", ingress=ingress_name,
                          rules=len(rules), mappings=len(mappings), lookups=len(cold.services))
        return configuration

    def _lookup(self, rule: RouteRule, cold: "_ColdPath") -> Tuple[List[str], Port]:
        """Resolve a rule whose service is missing from the cache.

        The Endpoints list is fetched at most once per resolution and only
        written back if the cache has not moved on meanwhile. No cache lock is
        held during the API round trips.
        """
        service_name = rule.service_name
        if service_name not in cold.services:
            logger.info("Service missing from cache, looking up", service=service_name,
                        namespace=self.namespace)
            try:
                if cold.membership is None:
                    expected = self._cache.version
                    items, _ = self._kube.list_endpoints(self.namespace)
                    cold.membership = membership_from_list(items)
                    self._cache.replace_if_version(expected, cold.membership)
                cold.services[service_name] = self._kube.read_service(self.namespace, service_name)
            except ApiException as e:
                if e.status == 404:
                    raise BackendUnresolvedError(service_name, "service not found") from e
                raise

        if service_name not in cold.membership:
            raise BackendUnresolvedError(service_name, "no endpoints object")

        port = target_port(cold.services[service_name], rule.service_port)
        return list(cold.membership[service_name]), port


class _ColdPath:
    """Control-plane reads made while resolving one ingress."""

    def __init__(self) -> None:
        self.membership: Optional[Dict[str, Tuple[str, ...]]] = None
        self.services: Dict[str, Dict[str, Any]] = {}
