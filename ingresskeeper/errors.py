"""Exception hierarchy for ingresskeeper."""

from typing import Optional


class IngressKeeperError(Exception):
    """Base class for all ingresskeeper errors."""


class ConfigurationError(IngressKeeperError):
    """Controller configuration could not be loaded or validated."""


class TransientWatchError(IngressKeeperError):
    """A watch stream disconnected or the API reported a retryable failure."""


class BackendUnresolvedError(IngressKeeperError):
    """A backend service was found in neither the cache nor a live lookup."""

    def __init__(self, service_name: str, reason: str) -> None:
        super().__init__(f"backend service '{service_name}' unresolved: {reason}")
        self.service_name = service_name
        self.reason = reason


class PersistenceError(IngressKeeperError):
    """The routing configuration artifact could not be written."""

    def __init__(self, path: str, reason: Optional[str] = None) -> None:
        super().__init__(f"failed to write routing configuration to {path}: {reason}")
        self.path = path


class LaunchError(IngressKeeperError):
    """The routing process executable or its working directory was not found."""


class AlreadyRunningError(IngressKeeperError):
    """A live routing process already exists."""
