"""ingresskeeper: reconcile Kubernetes ingress rules with live endpoints for a supervised router."""

__version__ = "0.1.0"

# Lazy imports to avoid loading the Kubernetes client for CLI usage
__all__ = [
    "IngressController",
    "MembershipCache",
    "RouteResolver",
    "ConfigurationPublisher",
    "ProcessSupervisor",
    "ControllerConfig",
    "RoutingConfiguration",
    "IpMapping",
]


def __getattr__(name):
    if name == "IngressController":
        from .controller import IngressController
        return IngressController
    elif name == "MembershipCache":
        from .cache import MembershipCache
        return MembershipCache
    elif name == "RouteResolver":
        from .resolver import RouteResolver
        return RouteResolver
    elif name == "ConfigurationPublisher":
        from .publisher import ConfigurationPublisher
        return ConfigurationPublisher
    elif name == "ProcessSupervisor":
        from .supervisor import ProcessSupervisor
        return ProcessSupervisor
    elif name in ("ControllerConfig", "RoutingConfiguration", "IpMapping"):
        from . import models
        return getattr(models, name)
    raise AttributeError(f"module '{__name__}' has no attribute '{name}'")
