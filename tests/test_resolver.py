"""Tests for route resolution."""

import pytest
from kubernetes.client.rest import ApiException

from ingresskeeper.cache import MembershipCache
from ingresskeeper.errors import BackendUnresolvedError
from ingresskeeper.publisher import ConfigurationPublisher
from ingresskeeper.resolver import RouteResolver, extract_route_rules, target_port

BACKEND_PROTOCOL = "nginx.ingress.kubernetes.io/backend-protocol"


class TestExtractRouteRules:
    """Tests for flattening ingress bodies into route rules."""

    def test_rules_and_paths_in_order(self, make_ingress):
        """Test one rule per path entry, in declaration order."""
        ingress = make_ingress(paths=[("/", "web", 80), ("/api", "api", "http")], host="example.com")

        rules = extract_route_rules(ingress)

        assert [(r.path, r.service_name, r.service_port, r.host) for r in rules] == [
            ("/", "web", 80, "example.com"),
            ("/api", "api", "http", "example.com"),
        ]

    def test_missing_path_defaults_to_root(self):
        """Test a path entry without a path matches everything."""
        ingress = {"spec": {"rules": [{"http": {"paths": [
            {"backend": {"service": {"name": "web", "port": {"number": 80}}}},
        ]}}]}}

        assert extract_route_rules(ingress)[0].path == "/"

    def test_legacy_backend_schema(self):
        """Test extensions/v1beta1 style backends are understood."""
        ingress = {"spec": {"rules": [{"http": {"paths": [
            {"path": "/", "backend": {"serviceName": "web", "servicePort": 80}},
        ]}}]}}

        rule = extract_route_rules(ingress)[0]

        assert rule.service_name == "web"
        assert rule.service_port == 80

    def test_resource_backend_skipped(self):
        """Test paths backed by a non-service resource are skipped."""
        ingress = {"spec": {"rules": [{"http": {"paths": [
            {"path": "/static", "backend": {"resource": {"kind": "StorageBucket", "name": "assets"}}},
        ]}}]}}

        assert extract_route_rules(ingress) == []

    def test_rule_without_http(self):
        """Test host-only rules produce nothing."""
        assert extract_route_rules({"spec": {"rules": [{"host": "example.com"}]}}) == []

    def test_backend_protocol_annotation(self, make_ingress):
        """Test the backend-protocol annotation switches the scheme."""
        ingress = make_ingress(annotations={BACKEND_PROTOCOL: "HTTPS"})

        assert extract_route_rules(ingress, BACKEND_PROTOCOL)[0].scheme == "https"
        assert extract_route_rules(ingress)[0].scheme == "http"


class TestTargetPort:
    """Tests for mapping service ports to target ports."""

    def test_numeric_port(self, make_service):
        """Test a numeric declaration matches the service port number."""
        assert target_port(make_service("web", port=80, target_port=8080), 80) == 8080

    def test_named_port(self, make_service):
        """Test a named declaration matches the service port name."""
        assert target_port(make_service("web", port=80, target_port=8080, port_name="http"), "http") == 8080

    def test_named_target_port(self, make_service):
        """Test a named target port is passed through."""
        assert target_port(make_service("web", target_port="web-http"), 80) == "web-http"

    def test_target_port_defaults_to_port(self, make_service):
        """Test an omitted targetPort means the service port."""
        assert target_port(make_service("web", port=80, target_port=None), 80) == 80

    def test_no_matching_port(self, make_service):
        """Test an unknown port cannot be resolved."""
        with pytest.raises(BackendUnresolvedError) as exc_info:
            target_port(make_service("web", port=80), 9090)

        assert exc_info.value.service_name == "web"


class TestRouteResolver:
    """Tests for RouteResolver."""

    @pytest.fixture
    def cache(self):
        return MembershipCache()

    @pytest.fixture
    def resolver(self, fake_kube, cache):
        return RouteResolver(fake_kube, cache, "default", BACKEND_PROTOCOL)

    def test_cached_service(self, resolver, cache, fake_kube, make_ingress):
        """Test a service in the cache maps directly with its declared port."""
        cache.replace({"web": ["10.0.0.5"]})

        configuration = resolver.resolve(make_ingress(paths=[("/", "web", 80)]))

        assert configuration.to_document() == {"ipMappings": [
            {"ipAddresses": ["10.0.0.5"], "port": 80, "path": "/", "scheme": "http"},
        ]}
        fake_kube.list_endpoints.assert_not_called()
        fake_kube.read_service.assert_not_called()

    def test_cold_cache_lookup(self, resolver, cache, fake_kube, make_ingress, make_endpoints, make_service):
        """Test a missing service is looked up and mapped to its target port."""
        fake_kube.list_endpoints.return_value = ([make_endpoints("web", "10.0.0.9")], "5")
        fake_kube.read_service.return_value = make_service("web", port=80, target_port=8080)

        configuration = resolver.resolve(make_ingress(paths=[("/", "web", 80)]))

        assert configuration.to_document() == {"ipMappings": [
            {"ipAddresses": ["10.0.0.9"], "port": 8080, "path": "/", "scheme": "http"},
        ]}
        assert cache.snapshot()["web"] == ("10.0.0.9",)
        fake_kube.read_service.assert_called_once_with("default", "web")

    def test_cold_lookup_happens_once(self, resolver, fake_kube, make_ingress, make_endpoints, make_service):
        """Test a second resolution of the same ingress needs no lookup."""
        fake_kube.list_endpoints.return_value = ([make_endpoints("web", "10.0.0.9")], "5")
        fake_kube.read_service.return_value = make_service("web")
        ingress = make_ingress(paths=[("/", "web", 80)])

        resolver.resolve(ingress)
        second = resolver.resolve(ingress)

        assert fake_kube.list_endpoints.call_count == 1
        assert fake_kube.read_service.call_count == 1
        assert second.ip_mappings[0].ip_addresses == ["10.0.0.9"]

    def test_one_lookup_per_missing_service(self, resolver, fake_kube, make_ingress, make_endpoints, make_service):
        """Test several paths to one missing service share a lookup."""
        fake_kube.list_endpoints.return_value = ([make_endpoints("web", "10.0.0.9")], "5")
        fake_kube.read_service.return_value = make_service("web")

        configuration = resolver.resolve(make_ingress(paths=[("/", "web", 80), ("/v2", "web", 80)]))

        assert [m.path for m in configuration.ip_mappings] == ["/", "/v2"]
        assert fake_kube.read_service.call_count == 1

    def test_missing_services_share_one_endpoints_list(self, resolver, fake_kube, make_ingress,
                                                       make_endpoints, make_service):
        """Test two missing services are resolved from a single Endpoints list."""
        fake_kube.list_endpoints.return_value = (
            [make_endpoints("web", "10.0.0.9"), make_endpoints("api", "10.0.0.7")], "5")
        fake_kube.read_service.side_effect = lambda namespace, name: make_service(name)

        configuration = resolver.resolve(make_ingress(paths=[("/", "web", 80), ("/api", "api", 80)]))

        assert [m.ip_addresses for m in configuration.ip_mappings] == [["10.0.0.9"], ["10.0.0.7"]]
        assert fake_kube.list_endpoints.call_count == 1
        assert fake_kube.read_service.call_count == 2

    def test_cold_lookup_keeps_newer_cache(self, resolver, cache, fake_kube, make_ingress,
                                           make_endpoints, make_service):
        """Test a snapshot swapped in during the lookup is not overwritten by older data."""
        def list_while_watcher_updates(namespace):
            cache.replace({"web": ["10.0.0.9"], "db": ["10.0.0.2"]})
            return [make_endpoints("web", "10.0.0.9"), make_endpoints("db", "10.0.0.1")], "5"

        fake_kube.list_endpoints.side_effect = list_while_watcher_updates
        fake_kube.read_service.return_value = make_service("web", port=80, target_port=8080)

        configuration = resolver.resolve(make_ingress(paths=[("/", "web", 80)]))

        assert configuration.ip_mappings[0].ip_addresses == ["10.0.0.9"]
        assert dict(cache.snapshot()) == {"web": ("10.0.0.9",), "db": ("10.0.0.2",)}
        assert cache.version == 1

    def test_service_without_addresses_dropped(self, resolver, cache, make_ingress):
        """Test a path whose service has no addresses is omitted, others kept."""
        cache.replace({"web": [], "api": ["10.0.0.7"]})

        configuration = resolver.resolve(make_ingress(paths=[("/", "web", 80), ("/api", "api", 8080)]))

        assert configuration.to_document() == {"ipMappings": [
            {"ipAddresses": ["10.0.0.7"], "port": 8080, "path": "/api", "scheme": "http"},
        ]}

    def test_cold_lookup_without_addresses_dropped(self, resolver, cache, fake_kube, make_ingress,
                                                   make_endpoints, make_service):
        """Test a looked-up service with zero addresses yields no mapping and no error."""
        fake_kube.list_endpoints.return_value = ([make_endpoints("web")], "5")
        fake_kube.read_service.return_value = make_service("web")

        configuration = resolver.resolve(make_ingress())

        assert configuration.ip_mappings == []
        assert cache.snapshot()["web"] == ()

    def test_missing_service_skipped(self, resolver, cache, fake_kube, make_ingress, make_endpoints):
        """Test a service the API does not know is skipped without failing the rest."""
        cache.replace({"api": ["10.0.0.7"]})
        fake_kube.list_endpoints.return_value = ([make_endpoints("api", "10.0.0.7")], "5")
        fake_kube.read_service.side_effect = ApiException(status=404, reason="Not Found")

        configuration = resolver.resolve(make_ingress(paths=[("/", "ghost", 80), ("/api", "api", 80)]))

        assert [m.path for m in configuration.ip_mappings] == ["/api"]

    def test_service_without_endpoints_object_skipped(self, resolver, fake_kube, make_ingress, make_service):
        """Test a service with no Endpoints object is unresolved."""
        fake_kube.list_endpoints.return_value = ([], "5")
        fake_kube.read_service.return_value = make_service("web")

        assert resolver.resolve(make_ingress()).ip_mappings == []

    def test_unmatched_port_skipped(self, resolver, fake_kube, make_ingress, make_endpoints, make_service):
        """Test a declared port the service does not expose is unresolved."""
        fake_kube.list_endpoints.return_value = ([make_endpoints("web", "10.0.0.9")], "5")
        fake_kube.read_service.return_value = make_service("web", port=443)

        assert resolver.resolve(make_ingress(paths=[("/", "web", 80)])).ip_mappings == []

    def test_api_failure_propagates(self, resolver, fake_kube, make_ingress):
        """Test non-404 API failures surface to the caller for retry."""
        fake_kube.read_service.side_effect = ApiException(status=503, reason="Service Unavailable")

        with pytest.raises(ApiException):
            resolver.resolve(make_ingress())

    def test_default_backend_not_routed(self, resolver, cache, fake_kube, make_ingress):
        """Test a default backend alone yields no catch-all mapping."""
        cache.replace({"web": ["10.0.0.5"]})
        ingress = make_ingress(
            paths=[],
            default_backend={"service": {"name": "web", "port": {"number": 80}}},
        )

        assert resolver.resolve(ingress).ip_mappings == []
        fake_kube.read_service.assert_not_called()

    def test_https_scheme(self, resolver, cache, make_ingress):
        """Test the backend-protocol annotation reaches the mapping."""
        cache.replace({"web": ["10.0.0.5"]})

        configuration = resolver.resolve(make_ingress(annotations={BACKEND_PROTOCOL: "HTTPS"}))

        assert configuration.ip_mappings[0].scheme == "https"

    def test_resolution_is_idempotent(self, resolver, cache, make_ingress, tmp_path):
        """Test an unchanged cache gives a byte-identical artifact."""
        cache.replace({"web": ["10.0.0.5", "10.0.0.6"], "api": ["10.0.0.7"]})
        ingress = make_ingress(paths=[("/", "web", 80), ("/api", "api", "grpc")])
        publisher = ConfigurationPublisher(tmp_path / "ingress.json")

        first = resolver.resolve(ingress)
        second = resolver.resolve(ingress)

        assert first == second
        assert publisher.render(first) == publisher.render(second)
