"""Tests for infraflow.controller.actuator — one pass per call, always persisted."""

from __future__ import annotations

from unittest.mock import MagicMock

import pytest

from conftest import SSH_KEY, TECHNICAL_ID, FakeInfraClient
from infraflow.api.models import (
    Cluster,
    Infrastructure,
    InfrastructureConfig,
    InfrastructureSpec,
    LoadBalancerConfig,
    NetworksConfig,
    SecretReference,
)
from infraflow.config.models import OperatorConfig
from infraflow.controller.actuator import MAX_ERROR_LENGTH, Actuator, compute_status
from infraflow.errors import (
    EXIT_CONFIGURATION_FAILURE,
    CloudAPIError,
    ConfigurationError,
    ErrorCode,
    InfraFlowError,
    StepError,
    exit_code_for,
)
from infraflow.flow.context import ReconcileContext
from infraflow.state.models import Backend, InfrastructureState, ResourceKind, ResourceRecord
from infraflow.state.store import MemoryOwnerStore

K = ResourceKind

NATIVE_SECRET = {"project-id": "proj-1", "serviceaccount.json": '{"token": "tok"}'}
COMPAT_SECRET = {"accessKeyID": "AKIA", "secretAccessKey": "secret"}


# ── helpers ──────────────────────────────────────────────────────────────


def _infra(**spec) -> Infrastructure:
    values = dict(region="eu01", secret_ref=SecretReference(name="cloudprovider"), ssh_public_key=SSH_KEY)
    values.update(spec)
    return Infrastructure(name="alpha", namespace="garden-dev", spec=InfrastructureSpec(**values))


def _cluster(**overrides) -> Cluster:
    values = dict(technical_id=TECHNICAL_ID, pods_cidr="100.96.0.0/11")
    values.update(overrides)
    return Cluster(**values)


@pytest.fixture
def clients():
    return {
        Backend.NATIVE: FakeInfraClient(Backend.NATIVE),
        Backend.COMPATIBILITY: FakeInfraClient(Backend.COMPATIBILITY),
    }


@pytest.fixture
def factory(clients):
    f = MagicMock()
    f.create.side_effect = lambda backend, credentials, region: clients[backend]
    return f


@pytest.fixture
def secret():
    return dict(NATIVE_SECRET)


@pytest.fixture
def store():
    return MemoryOwnerStore()


@pytest.fixture
def actuator(store, secret, factory):
    return Actuator(OperatorConfig(), store, lambda ref: secret, client_factory=factory)


# ── TestReconcile ────────────────────────────────────────────────────────


class TestReconcile:
    def test_creates_and_persists(self, actuator, store, factory):
        infra = _infra()
        result = actuator.reconcile(ReconcileContext(), infra, _cluster())
        assert result.succeeded
        assert sorted(infra.status.state["resources"]) == sorted(k.value for k in K)
        status = infra.status.provider_status
        assert status.phase == "Succeeded"
        assert status.backends == ["native"]
        assert status.egress_ips == ["198.51.100.7"]
        assert status.keypair_name == TECHNICAL_ID
        assert status.last_error == ""
        # once per step plus the final status
        assert store.writes == 6
        assert store.get("garden-dev/alpha").provider_status.phase == "Succeeded"
        factory.create.assert_called_once()
        assert factory.create.call_args.args[0] is Backend.NATIVE
        assert factory.create.call_args.args[2] == "eu01"

    def test_second_pass_creates_nothing(self, actuator, clients):
        infra = _infra()
        actuator.reconcile(ReconcileContext(), infra, _cluster())
        clients[Backend.NATIVE].calls.clear()
        result = actuator.reconcile(ReconcileContext(), infra, _cluster())
        assert result.executed == []
        assert clients[Backend.NATIVE].creates() == []

    def test_failure_persisted_and_raised(self, actuator, clients):
        native = clients[Backend.NATIVE]
        native.fail("create security group", CloudAPIError("internal error", status_code=500))
        infra = _infra()
        with pytest.raises(StepError) as exc_info:
            actuator.reconcile(ReconcileContext(), infra, _cluster())
        assert exc_info.value.retryable
        assert sorted(infra.status.state["resources"]) == ["network", "subnet"]
        status = infra.status.provider_status
        assert status.phase == "Failed"
        assert status.last_error == "security-group (native): internal error"
        assert status.network_id

        result = actuator.reconcile(ReconcileContext(), infra, _cluster())
        assert result.succeeded
        assert infra.status.provider_status.last_error == ""
        assert infra.status.state["last_step_error"] is None

    def test_fatal_error_codes(self, actuator, clients):
        clients[Backend.NATIVE].fail("list networks", CloudAPIError("status code 401", status_code=401))
        infra = _infra()
        with pytest.raises(InfraFlowError) as exc_info:
            actuator.reconcile(ReconcileContext(), infra, _cluster())
        assert exit_code_for(exc_info.value) == EXIT_CONFIGURATION_FAILURE
        assert infra.status.provider_status.error_codes == [ErrorCode.INFRA_UNAUTHENTICATED.value]

    def test_compat_only_secret_falls_back(self, actuator, secret, clients):
        secret.clear()
        secret.update(COMPAT_SECRET)
        infra = _infra()
        actuator.reconcile(ReconcileContext(), infra, _cluster())
        assert infra.status.provider_status.backends == ["compatibility"]
        assert clients[Backend.NATIVE].calls == []

    def test_load_balancer_disabled(self, actuator, clients):
        config = InfrastructureConfig(load_balancer=LoadBalancerConfig(enabled=False))
        infra = _infra(provider_config=config)
        actuator.reconcile(ReconcileContext(), infra, _cluster())
        assert "load-balancer" not in infra.status.state["resources"]
        assert clients[Backend.NATIVE].lbs == {}


# ── TestFailuresBeforeFlow ───────────────────────────────────────────────


class TestFailuresBeforeFlow:
    def test_corrupt_blob(self, actuator, factory):
        infra = _infra()
        blob = {"resources": {"bogus-kind": {"external_id": "x"}}}
        infra.status.state = blob
        with pytest.raises(ConfigurationError):
            actuator.reconcile(ReconcileContext(), infra, _cluster())
        status = infra.status.provider_status
        assert status.phase == "Failed"
        assert status.error_codes == [ErrorCode.CONFIGURATION_PROBLEM.value]
        assert infra.status.state == blob
        factory.create.assert_not_called()

    def test_missing_credentials(self, actuator, secret, factory):
        secret.clear()
        infra = _infra()
        with pytest.raises(ConfigurationError):
            actuator.reconcile(ReconcileContext(), infra, _cluster())
        assert infra.status.provider_status.phase == "Failed"
        assert infra.status.provider_status.error_codes == [ErrorCode.CONFIGURATION_PROBLEM.value]
        factory.create.assert_not_called()

    def test_invalid_spec(self, actuator, factory):
        infra = _infra(region="")
        with pytest.raises(ConfigurationError, match="region"):
            actuator.reconcile(ReconcileContext(), infra, _cluster())
        factory.create.assert_not_called()

    def test_state_kept_on_validation_error(self, actuator):
        infra = _infra()
        actuator.reconcile(ReconcileContext(), infra, _cluster())
        recorded = sorted(infra.status.state["resources"])
        with pytest.raises(ConfigurationError):
            actuator.reconcile(ReconcileContext(), infra, _cluster(pods_cidr="not-a-cidr"))
        assert sorted(infra.status.state["resources"]) == recorded
        assert infra.status.provider_status.phase == "Failed"


# ── TestDelete ───────────────────────────────────────────────────────────


class TestDelete:
    def test_clears_state(self, actuator, clients):
        infra = _infra()
        actuator.reconcile(ReconcileContext(), infra, _cluster())
        result = actuator.delete(ReconcileContext(), infra, _cluster())
        assert result.succeeded
        assert infra.status.state is None
        assert infra.status.provider_status.phase == "Succeeded"
        native = clients[Backend.NATIVE]
        assert native.networks == {} and native.keypairs == {}

    @pytest.mark.parametrize("spec, cluster", [
        ({"provider_config": InfrastructureConfig(networks=NetworksConfig(dns_servers=["not-an-ip"]))}, {}),
        ({"provider_config": InfrastructureConfig(networks=NetworksConfig(workers="10.250.0.1/16"))}, {}),
        ({}, {"pods_cidr": "100.96.0.1/11"}),
    ])
    def test_spec_invalidated_after_create(self, actuator, clients, spec, cluster):
        infra = _infra()
        actuator.reconcile(ReconcileContext(), infra, _cluster())
        changed = _infra(**spec)
        changed.status = infra.status
        result = actuator.delete(ReconcileContext(), changed, _cluster(**cluster))
        assert result.succeeded
        assert changed.status.state is None
        assert clients[Backend.NATIVE].networks == {}

    def test_delete_still_needs_region(self, actuator, factory):
        with pytest.raises(ConfigurationError, match="region"):
            actuator.delete(ReconcileContext(), _infra(region=""), _cluster())
        factory.create.assert_not_called()

    def test_never_created(self, actuator):
        infra = _infra()
        result = actuator.delete(ReconcileContext(), infra, _cluster())
        assert result.succeeded
        assert infra.status.state is None

    def test_delete_requires_pinned_backend_credentials(self, actuator, secret, clients):
        infra = _infra()
        actuator.reconcile(ReconcileContext(), infra, _cluster())
        secret.pop("project-id")
        secret.update(COMPAT_SECRET)
        with pytest.raises(ConfigurationError, match="native"):
            actuator.delete(ReconcileContext(), infra, _cluster())
        assert len(clients[Backend.NATIVE].networks) == 1

    def test_force_delete_swallows(self, actuator, clients):
        infra = _infra()
        actuator.reconcile(ReconcileContext(), infra, _cluster())
        clients[Backend.NATIVE].fail("delete network", CloudAPIError("unavailable", status_code=503))
        assert actuator.force_delete(ReconcileContext(), infra, _cluster()) is None
        assert list(infra.status.state["resources"]) == ["network"]
        assert infra.status.provider_status.phase == "Failed"

    def test_force_delete_success(self, actuator):
        infra = _infra()
        actuator.reconcile(ReconcileContext(), infra, _cluster())
        assert actuator.force_delete(ReconcileContext(), infra, _cluster()).succeeded
        assert infra.status.state is None


# ── TestMigrateRestore ───────────────────────────────────────────────────


class TestMigrateRestore:
    def test_migrate_is_noop(self, actuator, store, factory):
        infra = _infra()
        assert actuator.migrate(ReconcileContext(), infra, _cluster()) is None
        assert store.writes == 0
        factory.create.assert_not_called()

    def test_restore_uses_restored_state(self, actuator, clients):
        original = _infra()
        actuator.reconcile(ReconcileContext(), original, _cluster())
        restored = _infra()
        restored.status.state = original.status.state
        clients[Backend.NATIVE].calls.clear()
        result = actuator.restore(ReconcileContext(), restored, _cluster())
        assert result.succeeded
        assert result.executed == []
        assert clients[Backend.NATIVE].creates() == []


# ── TestComputeStatus ────────────────────────────────────────────────────


class TestComputeStatus:
    def test_error_bounded(self):
        status = compute_status(InfrastructureState(), "Failed", InfraFlowError("word " * 200))
        assert len(status.last_error) == MAX_ERROR_LENGTH
        assert status.last_error.endswith("...")
        assert "  " not in status.last_error

    def test_short_error_kept(self):
        status = compute_status(InfrastructureState(), "Failed", InfraFlowError("boom\nagain"))
        assert status.last_error == "boom again"

    def test_error_from_state(self):
        state = InfrastructureState()
        state.set_error(K.SUBNET, Backend.NATIVE, "quota exceeded", [ErrorCode.INFRA_QUOTA_EXCEEDED.value])
        status = compute_status(state, "Failed")
        assert status.last_error == "subnet: quota exceeded"
        assert status.error_codes == ["ERR_INFRA_QUOTA_EXCEEDED"]

    def test_resource_fields(self):
        state = InfrastructureState()
        state.record(K.NETWORK, ResourceRecord(
            external_id="net-1", backend=Backend.COMPATIBILITY, name="alpha",
            attributes={"egress_ip": "203.0.113.5"},
        ))
        state.record(K.SECURITY_GROUP, ResourceRecord(
            external_id="sg-1", backend=Backend.NATIVE, name="alpha-sg",
        ))
        status = compute_status(state, "Succeeded")
        assert (status.network_id, status.network_name) == ("net-1", "alpha")
        assert status.egress_ips == ["203.0.113.5"]
        assert status.security_group_name == "alpha-sg"
        assert status.backends == ["compatibility", "native"]
        assert status.subnet_id == ""
