"""
Tests for slot, deployment, port and routing models.
"""

import pytest
from pydantic import ValidationError

from bgd_manager.models import (
    Deployment,
    DeploymentStatus,
    HealthCheckPolicy,
    InvalidStateTransition,
    PortAssignment,
    RouteTarget,
    RoutingMode,
    RoutingSpec,
    ServiceHealth,
    Slot,
    SlotHealthReport,
    SlotState,
    SlotStatus,
)


class TestSlot:
    """Tests for Slot."""

    def test_other(self):
        assert Slot.BLUE.other == Slot.GREEN
        assert Slot.GREEN.other == Slot.BLUE

    @pytest.mark.parametrize(
        "name, slot",
        [("blue", Slot.BLUE), ("GREEN", Slot.GREEN), ("a", Slot.BLUE), (" b ", Slot.GREEN)],
    )
    def test_parse(self, name, slot):
        assert Slot.parse(name) == slot

    def test_parse_rejects_unknown(self):
        with pytest.raises(ValueError, match="Unknown slot"):
            Slot.parse("red")

    def test_describe_receiving_weight(self):
        state = SlotState(slot=Slot.GREEN, status=SlotStatus.RECEIVING, weight=9)
        assert state.describe() == "receiving(9)"
        assert SlotState(slot=Slot.BLUE, status=SlotStatus.ACTIVE).describe() == "active"


class TestDeployment:
    """Tests for the deployment status machine."""

    @pytest.fixture
    def deployment(self):
        return Deployment(
            deployment_id="shop-1.2.0-1",
            app_name="shop",
            version="1.2.0",
            target_slot=Slot.GREEN,
            previous_slot=Slot.BLUE,
        )

    def test_starts_started(self, deployment):
        assert deployment.status == DeploymentStatus.STARTED
        assert not deployment.is_terminal

    def test_happy_path(self, deployment):
        for status in (
            DeploymentStatus.ENVIRONMENT_UP,
            DeploymentStatus.MIGRATIONS_APPLIED,
            DeploymentStatus.HEALTHY,
            DeploymentStatus.SHIFTING_TRAFFIC,
            DeploymentStatus.CUTOVER,
        ):
            deployment.transition(status)
        assert deployment.is_terminal

    def test_cannot_skip_steps(self, deployment):
        with pytest.raises(InvalidStateTransition):
            deployment.transition(DeploymentStatus.HEALTHY)

    def test_failed_from_any_in_flight_status(self, deployment):
        deployment.transition(DeploymentStatus.ENVIRONMENT_UP)
        deployment.transition(DeploymentStatus.FAILED)
        assert deployment.is_terminal

    def test_failed_is_only_left_by_rollback(self, deployment):
        deployment.transition(DeploymentStatus.FAILED)
        assert not deployment.can_transition(DeploymentStatus.CUTOVER)
        assert deployment.can_transition(DeploymentStatus.ROLLED_BACK)

    def test_same_status_is_noop(self, deployment):
        before = deployment.updated_at
        deployment.transition(DeploymentStatus.STARTED, now="2030-01-01T00:00:00+00:00")
        assert deployment.updated_at == before

    def test_round_trips_through_json(self, deployment):
        restored = Deployment.model_validate_json(deployment.model_dump_json())
        assert restored == deployment


class TestPortAssignment:
    """Tests for PortAssignment."""

    def test_rejects_duplicates(self):
        with pytest.raises(ValidationError, match="assigned to both"):
            PortAssignment(ports={"blue": 8081, "green": 8081})

    def test_rejects_out_of_range(self):
        with pytest.raises(ValidationError):
            PortAssignment(ports={"blue": 70000})

    def test_service_roles(self):
        target = RouteTarget(service="api", port=8080)
        assert PortAssignment.service_role(Slot.GREEN, target) == "green:api:8080"
        ports = PortAssignment(ports={"blue:api:8080": 8080, "green:api:8080": 8180})
        assert ports.service_port(Slot.GREEN, target) == 8180


class TestRoutingSpec:
    """Tests for RoutingSpec validation."""

    def test_single_requires_target(self, ports):
        with pytest.raises(ValidationError, match="target slot"):
            RoutingSpec(ports=ports)

    @pytest.mark.parametrize("blue", range(0, 11))
    def test_dual_accepts_weights_summing_to_total(self, routing_spec, blue):
        spec = routing_spec.dual(blue, 10 - blue)
        assert spec.mode == RoutingMode.DUAL
        assert spec.weight_for(Slot.BLUE) == blue
        assert spec.weight_for(Slot.GREEN) == 10 - blue

    @pytest.mark.parametrize("blue, green", [(5, 4), (11, 0), (-1, 11)])
    def test_dual_rejects_bad_weights(self, routing_spec, blue, green):
        with pytest.raises(ValidationError):
            routing_spec.dual(blue, green)

    def test_single_copy_does_not_mutate(self, routing_spec):
        green = routing_spec.single(Slot.GREEN)
        assert green.target_slot == Slot.GREEN
        assert routing_spec.target_slot == Slot.BLUE
        assert green.weight_for(Slot.GREEN) == 10

    @pytest.mark.parametrize("path", ["/", "no-slash", "/bad path"])
    def test_rejects_bad_paths(self, ports, path):
        with pytest.raises(ValidationError):
            RoutingSpec(
                target_slot=Slot.BLUE,
                ports=ports,
                path_routes={path: RouteTarget(service="api", port=8080)},
            )

    def test_rejects_bad_subdomain(self, ports):
        with pytest.raises(ValidationError):
            RoutingSpec(
                target_slot=Slot.BLUE,
                ports=ports,
                subdomain_routes={"-api": RouteTarget(service="api", port=8080)},
            )

    @pytest.mark.parametrize(
        "paths", [("/api-v1", "/api_v1"), ("/api", "/api/"), ("/a.b", "/a/b")]
    )
    def test_rejects_paths_sharing_an_upstream(self, ports, paths):
        with pytest.raises(ValidationError, match="same upstream"):
            RoutingSpec(
                target_slot=Slot.BLUE,
                ports=ports,
                path_routes={
                    paths[0]: RouteTarget(service="api", port=8080),
                    paths[1]: RouteTarget(service="admin", port=3001),
                },
            )

    def test_rejects_subdomains_sharing_an_upstream(self, ports):
        with pytest.raises(ValidationError, match="same upstream"):
            RoutingSpec(
                target_slot=Slot.BLUE,
                ports=ports,
                subdomain_routes={
                    "api-v1": RouteTarget(service="api", port=8080),
                    "api--v1": RouteTarget(service="admin", port=3001),
                },
            )

    def test_dual_copy_keeps_distinct_upstreams(self, ports):
        spec = RoutingSpec(
            target_slot=Slot.BLUE,
            ports=ports,
            path_routes={
                "/api": RouteTarget(service="api", port=8080),
                "/api/v1": RouteTarget(service="admin", port=3001),
            },
        )
        keys = [route.key for route in spec.dual(5, 5).routes()]
        assert keys == ["default", "path_api", "path_api_v1"]

    def test_ssl_requires_certificates(self, ports):
        with pytest.raises(ValidationError, match="TLS"):
            RoutingSpec(target_slot=Slot.BLUE, ports=ports, ssl=True)

    def test_routes_default_first(self, ports):
        spec = RoutingSpec(
            target_slot=Slot.BLUE,
            ports=ports,
            path_routes={"/api": RouteTarget(service="api", port=8080)},
            subdomain_routes={"admin": RouteTarget(service="admin", port=3001)},
        )
        keys = [route.key for route in spec.routes()]
        assert keys == ["default", "path_api", "sub_admin"]

    def test_backend_default_route_uses_slot_port(self, routing_spec):
        route = next(routing_spec.routes())
        assert routing_spec.backend(Slot.GREEN, route) == ("green", 8082)


class TestHealthModels:
    """Tests for health policy and reports."""

    def test_fixed_delay(self):
        policy = HealthCheckPolicy(retries=3, delay=2)
        assert [policy.sleep_before(i) for i in range(3)] == [2, 2, 2]
        assert policy.worst_case_wait() == 4

    def test_backoff(self):
        policy = HealthCheckPolicy(retries=4, delay=1, backoff=True)
        assert [policy.sleep_before(i) for i in range(3)] == [1, 2, 4]
        assert policy.worst_case_wait() == 7

    def test_retries_must_be_positive(self):
        with pytest.raises(ValidationError):
            HealthCheckPolicy(retries=0)

    def test_empty_report_is_unhealthy(self):
        assert not SlotHealthReport(slot="blue").healthy

    def test_report_lists_failing_services(self):
        report = SlotHealthReport(
            slot="green",
            services=[
                ServiceHealth(service="app", container="c1", state="running", health="healthy", healthy=True),
                ServiceHealth(service="db", container="c2", state="exited", healthy=False),
            ],
        )
        assert not report.healthy
        assert report.failing == ["db"]
        assert report.breakdown() == {"app": "healthy", "db": "exited"}
