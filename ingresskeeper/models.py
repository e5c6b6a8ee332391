"""Data models for ingresskeeper routing reconciliation."""

from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator
from tenacity import wait_exponential


class RouteRule(BaseModel):
    """One (path, backend service, backend port) entry extracted from an ingress."""

    path: str = Field("/", description="Request path, prefix semantics left to the router")
    service_name: str = Field(..., description="Target service name")
    service_port: Union[int, str] = Field(..., description="Numeric or named service port as declared")
    scheme: str = Field("http", description="Scheme used to reach the backend")
    host: Optional[str] = Field(None, description="Host the rule applies to, if any")


class IpMapping(BaseModel):
    """Resolved routing entry written into the published configuration."""

    model_config = ConfigDict(populate_by_name=True)

    ip_addresses: List[str] = Field(..., alias="ipAddresses", min_length=1, description="Backend addresses")
    port: Union[int, str] = Field(..., description="Backend port")
    path: str = Field(..., description="Request path")
    scheme: str = Field("http", description="Backend scheme")


class RoutingConfiguration(BaseModel):
    """Full routing configuration, replaced wholesale on every publish."""

    model_config = ConfigDict(populate_by_name=True)

    ip_mappings: List[IpMapping] = Field(default_factory=list, alias="ipMappings", description="Ordered mappings")

    def to_document(self) -> Dict[str, Any]:
        """Return the artifact document consumed by the routing process."""
        return self.model_dump(mode="json", by_alias=True)


class ProcessStatus(BaseModel):
    """Lifecycle status of the supervised routing process."""

    running: bool = Field(False, description="Whether a live process handle exists")
    pid: Optional[int] = Field(None, description="PID of the current or last process")
    returncode: Optional[int] = Field(None, description="Exit code if the last process exited")
    launches: int = Field(0, description="Number of successful launches")


class WatchEvent(BaseModel):
    """A single event delivered by a watch stream."""

    type: str = Field(..., description="ADDED, MODIFIED, DELETED, ERROR or BOOKMARK")
    object: Dict[str, Any] = Field(default_factory=dict, description="Resource body as returned by the API")

    @property
    def name(self) -> Optional[str]:
        return (self.object.get("metadata") or {}).get("name")

    @property
    def resource_version(self) -> Optional[str]:
        return (self.object.get("metadata") or {}).get("resourceVersion")


class BackoffConfig(BaseModel):
    """Bounded exponential backoff for watch re-establishment and API retries."""

    initial_delay: float = Field(1.0, gt=0, description="First retry delay in seconds")
    max_delay: float = Field(60.0, gt=0, description="Upper bound on the retry delay in seconds")
    multiplier: float = Field(2.0, ge=1, description="Growth factor between attempts")

    def wait(self) -> wait_exponential:
        """Wait strategy: ``initial_delay``, then times ``multiplier`` per retry, capped at ``max_delay``."""
        return wait_exponential(multiplier=self.initial_delay, max=self.max_delay, exp_base=self.multiplier)


class ControllerConfig(BaseModel):
    """Configuration for the ingress controller."""

    namespace: str = Field("default", description="Namespace whose ingresses and endpoints are watched")
    kubeconfig_path: Optional[str] = Field(None, description="Path to kubeconfig file, in-cluster config if unset")
    context: Optional[str] = Field(None, description="Kubernetes context name")
    ingress_name: Optional[str] = Field(None, description="Only reconcile the ingress with this name")
    config_path: str = Field("/app/Ingress/ingress.json", description="Routing configuration artifact path")
    working_dir: str = Field("/app/Ingress", description="Working directory of the routing process")
    command: List[str] = Field(
        default_factory=lambda: ["dotnet", "/app/Ingress/Ingress.dll"],
        description="Routing process executable and arguments",
    )
    stop_timeout: float = Field(10.0, gt=0, description="Seconds to wait for graceful termination")
    watch_timeout_seconds: int = Field(60, gt=0, description="Server-side timeout of each watch request")
    request_timeout_seconds: float = Field(30.0, gt=0, description="Client-side timeout of list and read requests")
    event_queue_size: int = Field(100, gt=0, description="Ingress events buffered before ingestion blocks")
    backend_protocol_annotation: str = Field(
        "nginx.ingress.kubernetes.io/backend-protocol",
        description="Ingress annotation selecting the backend scheme",
    )
    backoff: BackoffConfig = Field(default_factory=BackoffConfig, description="Watch retry policy")

    @field_validator("command")
    @classmethod
    def _command_not_empty(cls, value: List[str]) -> List[str]:
        if not value:
            raise ValueError("command must name an executable")
        return value
