"""Endpoint watcher keeping the membership cache in step with the cluster."""

import threading
from typing import Any, Dict, Iterable, List, Optional, Tuple

from .cache import MembershipCache
from .kube import ENDPOINTS, KubeClient
from .logging_config import get_logger
from .models import BackoffConfig, WatchEvent
from .watch import WatchLoop

logger = get_logger(__name__)


def addresses_from_endpoints(endpoints: Dict[str, Any]) -> Tuple[str, ...]:
    """Ready addresses of an Endpoints body, in subset order."""
    return tuple(
        address["ip"]
        for subset in endpoints.get("subsets") or []
        for address in subset.get("addresses") or []
        if address.get("ip")
    )


def membership_from_list(items: Iterable[Dict[str, Any]]) -> Dict[str, Tuple[str, ...]]:
    """Build the full service-to-addresses mapping from a list of Endpoints."""
    membership: Dict[str, Tuple[str, ...]] = {}
    for item in items:
        name = (item.get("metadata") or {}).get("name")
        if name:
            membership[name] = addresses_from_endpoints(item)
    return membership


class EndpointWatcher(WatchLoop):
    """Watch Endpoints in a namespace and swap the cache on every event.

    Every event carries the complete address list of one service, so that
    service's entry is replaced outright and the full mapping is handed to
    the cache. Nothing is merged with earlier address lists.
    """

    kind = ENDPOINTS

    def __init__(
        self,
        kube: KubeClient,
        cache: MembershipCache,
        namespace: str,
        stop_event: threading.Event,
        backoff: Optional[BackoffConfig] = None,
    ) -> None:
        super().__init__(kube, namespace, stop_event, backoff)
        self._cache = cache
        self._membership: Dict[str, Tuple[str, ...]] = {}

    def relist(self) -> Optional[str]:
        items, resource_version = self._kube.list_endpoints(self.namespace)
        self._membership = membership_from_list(items)
        self._cache.replace(self._membership)
        logger.info("Endpoints listed", namespace=self.namespace,
                    services=len(self._membership), resource_version=resource_version)
        return resource_version

    def handle_event(self, event: WatchEvent) -> None:
        name = event.name
        if not name:
            logger.warning("Ignoring endpoints event without a name", event_type=event.type)
            return

        membership = dict(self._membership)
        if event.type == "DELETED":
            membership.pop(name, None)
        else:
            membership[name] = addresses_from_endpoints(event.object)

        self._membership = membership
        self._cache.replace(membership)
        logger.debug("Service membership updated", service=name, event_type=event.type,
                     addresses=list(membership.get(name, ())))

    @property
    def services(self) -> List[str]:
        return sorted(self._membership)
