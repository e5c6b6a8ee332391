"""Membership cache mapping service names to their reachable addresses."""

import threading
from types import MappingProxyType
from typing import Iterable, Mapping, Tuple

from .logging_config import get_logger

logger = get_logger(__name__)

ServiceAddresses = Mapping[str, Tuple[str, ...]]


class MembershipCache:
    """Immutable-snapshot cell holding the latest service membership.

    Writers hand over a complete mapping which is frozen and swapped in as a
    whole; readers get the current frozen mapping and can hold on to it for
    as long as they like without seeing later writes.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._snapshot: ServiceAddresses = MappingProxyType({})
        self._version = 0

    @property
    def version(self) -> int:
        """Number of replacements applied so far."""
        with self._lock:
            return self._version

    def snapshot(self) -> ServiceAddresses:
        """Return the current membership as a read-only mapping."""
        with self._lock:
            return self._snapshot

    def replace(self, mapping: Mapping[str, Iterable[str]]) -> None:
        """Atomically replace the whole membership with ``mapping``."""
        frozen = MappingProxyType({name: tuple(addresses) for name, addresses in mapping.items()})
        with self._lock:
            self._snapshot = frozen
            self._version += 1
            version = self._version
        logger.debug("Membership cache replaced", services=len(frozen), version=version)

    def replace_if_version(self, expected: int, mapping: Mapping[str, Iterable[str]]) -> bool:
        """Replace the membership only if no replacement happened since ``expected``.

        Returns:
            True if ``mapping`` was swapped in, False if a newer snapshot is kept.
        """
        frozen = MappingProxyType({name: tuple(addresses) for name, addresses in mapping.items()})
        with self._lock:
            if self._version != expected:
                current = self._version
                swapped = False
            else:
                self._snapshot = frozen
                self._version += 1
                current = self._version
                swapped = True
        if swapped:
            logger.debug("Membership cache replaced", services=len(frozen), version=current)
        else:
            logger.debug("Membership cache newer than lookup, lookup result dropped",
                         expected=expected, version=current)
        return swapped
