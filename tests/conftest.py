"""Shared fixtures building Kubernetes resource bodies and a fake API client."""

from unittest.mock import MagicMock

import pytest

from ingresskeeper.kube import KubeClient


@pytest.fixture
def make_endpoints():
    """Factory for Endpoints bodies."""
    def _make(name, *ips, not_ready=(), resource_version="1"):
        body = {"metadata": {"name": name, "resourceVersion": resource_version}}
        if ips or not_ready:
            subset = {"addresses": [{"ip": ip} for ip in ips]}
            if not_ready:
                subset["notReadyAddresses"] = [{"ip": ip} for ip in not_ready]
            body["subsets"] = [subset]
        return body
    return _make


@pytest.fixture
def make_service():
    """Factory for Service bodies with a single port."""
    def _make(name, port=80, target_port=8080, port_name="http"):
        service_port = {"name": port_name, "port": port, "protocol": "TCP"}
        if target_port is not None:
            service_port["targetPort"] = target_port
        return {"metadata": {"name": name}, "spec": {"ports": [service_port]}}
    return _make


@pytest.fixture
def make_ingress():
    """Factory for networking.k8s.io/v1 Ingress bodies.

    ``paths`` is a list of (path, service name, port) tuples; a string port
    is emitted as a named port.
    """
    def _make(name="web-ingress", paths=(("/", "web", 80),), host=None, annotations=None, default_backend=None):
        http_paths = []
        for path, service, port in paths:
            port_ref = {"name": port} if isinstance(port, str) else {"number": port}
            http_paths.append({
                "path": path,
                "pathType": "Prefix",
                "backend": {"service": {"name": service, "port": port_ref}},
            })
        spec = {}
        if http_paths:
            rule = {"http": {"paths": http_paths}}
            if host:
                rule["host"] = host
            spec["rules"] = [rule]
        if default_backend:
            spec["defaultBackend"] = default_backend
        return {
            "metadata": {"name": name, "namespace": "default", "annotations": annotations or {}},
            "spec": spec,
        }
    return _make


@pytest.fixture
def fake_kube():
    """KubeClient double with an empty namespace."""
    kube = MagicMock(spec=KubeClient)
    kube.list_endpoints.return_value = ([], "1")
    kube.list_ingresses.return_value = []
    kube.watch.return_value = []
    return kube
