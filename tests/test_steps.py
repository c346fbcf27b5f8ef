"""Tests for infraflow.flow.steps — per-kind ensure/delete/recover steps."""

from __future__ import annotations

import pytest

from conftest import SSH_KEY, FakeInfraClient, make_desired
from infraflow.cloud.facade import (
    ANY_IPV4,
    EGRESS,
    INGRESS,
    NetworkSpec,
    SecurityGroupRule,
    SubnetSpec,
)
from infraflow.errors import CloudAPIError, ConfigurationError, ErrorCode, InfraFlowError
from infraflow.flow import steps
from infraflow.flow.steps import CREATE_STEPS, DELETE_STEPS, desired_rules
from infraflow.state.models import Backend, InfrastructureState, ResourceKind, ResourceRecord

K = ResourceKind


# ── helpers ──────────────────────────────────────────────────────────────


def _create_all(desired, client) -> InfrastructureState:
    state = InfrastructureState()
    for fn in (steps.ensure_network, steps.ensure_subnet, steps.ensure_security_group,
               steps.ensure_keypair, steps.ensure_load_balancer):
        state = fn(desired, state, client)
    return state


# ── TestDesiredRules ─────────────────────────────────────────────────────


class TestDesiredRules:
    def test_base_rules(self):
        rules = desired_rules(make_desired(pods_cidr=None), "sg-1")
        assert len(rules) == 4
        assert rules[0].remote_group_id == "sg-1"
        assert rules[1].direction == EGRESS
        assert {(r.protocol, r.port_min, r.port_max, r.ip_range) for r in rules[2:]} == {
            ("tcp", 30000, 32767, ANY_IPV4),
            ("udp", 30000, 32767, ANY_IPV4),
        }

    def test_pods_cidr_rule(self):
        rules = desired_rules(make_desired(pods_cidr="100.96.0.0/11"), "sg-1")
        assert rules[-1].ip_range == "100.96.0.0/11"
        assert rules[-1].direction == INGRESS

    def test_nodes_cidr(self):
        rules = desired_rules(make_desired(), "sg-1", nodes_cidr="10.9.0.0/16")
        assert all(r.ip_range == "10.9.0.0/16" for r in rules if r.port_min == 30000)


# ── TestEnsureSteps ──────────────────────────────────────────────────────


class TestEnsureSteps:
    def test_network_recorded(self, native: FakeInfraClient, desired):
        state = steps.ensure_network(desired, InfrastructureState(), native)
        rec = state.get(K.NETWORK)
        assert rec.backend is Backend.NATIVE
        assert rec.name == desired.network_name
        assert rec.managed
        assert rec.attributes == {"cidr": "10.250.0.0/16", "egress_ip": "198.51.100.7"}

    def test_input_state_not_mutated(self, native: FakeInfraClient, desired):
        state = InfrastructureState()
        steps.ensure_network(desired, state, native)
        assert state.is_empty

    def test_network_adopted_by_name(self, native: FakeInfraClient, desired):
        existing = native._create_network(NetworkSpec(name=desired.network_name, cidr="10.250.0.0/16"))
        state = steps.ensure_network(desired, InfrastructureState(), native)
        assert state.external_id(K.NETWORK) == existing.id
        assert native.creates() == ["create network"]

    def test_subnet_requires_network(self, native: FakeInfraClient, desired):
        with pytest.raises(InfraFlowError) as exc_info:
            steps.ensure_subnet(desired, InfrastructureState(), native)
        assert exc_info.value.codes == (ErrorCode.RETRYABLE_INFRA_DEPENDENCIES,)

    def test_all_steps(self, native: FakeInfraClient, desired):
        state = _create_all(desired, native)
        assert list(state.resources) == list(K)
        lb = native.lbs[state.external_id(K.LOAD_BALANCER)]
        assert lb.name == f"{desired.technical_id}-internal"
        assert native.lb_refs[lb.id] == (state.external_id(K.SUBNET), state.external_id(K.SECURITY_GROUP))
        assert state.get(K.SUBNET).attributes["network_id"] == state.external_id(K.NETWORK)

    def test_security_group_rules(self, native: FakeInfraClient, desired):
        state = _create_all(desired, native)
        group = native.groups[state.external_id(K.SECURITY_GROUP)]
        keys = {r.key() for r in group.rules}
        assert SecurityGroupRule(direction=INGRESS, remote_group_id=group.id).key() in keys
        assert SecurityGroupRule(direction=INGRESS, ip_range=desired.pods_cidr).key() in keys

    def test_rerun_is_noop(self, native: FakeInfraClient, desired):
        state = _create_all(desired, native)
        creates = list(native.creates())
        again = _create_all(desired, native)
        assert native.creates() == creates
        assert {k: r.external_id for k, r in again.resources.items()} == {
            k: r.external_id for k, r in state.resources.items()
        }

    def test_missing_rule_restored(self, native: FakeInfraClient, desired):
        state = _create_all(desired, native)
        group = native.groups[state.external_id(K.SECURITY_GROUP)]
        group.rules = [r for r in group.rules if r.direction != EGRESS]
        steps.ensure_security_group(desired, state, native)
        assert any(r.direction == EGRESS for r in native.groups[group.id].rules)

    def test_keypair_fingerprint(self, native: FakeInfraClient, desired):
        state = steps.ensure_keypair(desired, InfrastructureState(), native)
        assert state.get(K.KEYPAIR).external_id == desired.keypair_name
        assert state.get(K.KEYPAIR).attributes == {"fingerprint": "fp"}
        assert native.keypairs[desired.keypair_name].public_key == SSH_KEY


# ── TestUserNetwork ──────────────────────────────────────────────────────


class TestUserNetwork:
    def test_missing_user_network_fatal(self, native: FakeInfraClient):
        desired = make_desired(network_id="net-absent")
        with pytest.raises(ConfigurationError) as exc_info:
            steps.ensure_network(desired, InfrastructureState(), native)
        assert exc_info.value.codes == (ErrorCode.INFRA_DEPENDENCIES,)
        assert not exc_info.value.retryable

    def test_user_network_unmanaged(self, native: FakeInfraClient):
        net = native._create_network(NetworkSpec(name="shared", cidr="10.9.0.0/16"))
        desired = make_desired(network_id=net.id)
        state = steps.ensure_network(desired, InfrastructureState(), native)
        assert state.get(K.NETWORK).managed is False
        assert state.get(K.NETWORK).attributes["cidr"] == "10.9.0.0/16"
        assert native.creates() == ["create network"]

    def test_existing_subnet_adopted_unmanaged(self, native: FakeInfraClient):
        net = native._create_network(NetworkSpec(name="shared", cidr="10.9.0.0/16"))
        sub = native._create_subnet(SubnetSpec(name="shared-sub", network_id=net.id, cidr="10.9.0.0/24"))
        desired = make_desired(network_id=net.id)
        state = steps.ensure_network(desired, InfrastructureState(), native)
        state = steps.ensure_subnet(desired, state, native)
        assert state.external_id(K.SUBNET) == sub.id
        assert state.get(K.SUBNET).managed is False

    def test_node_ports_limited_to_network_cidr(self, native: FakeInfraClient):
        net = native._create_network(NetworkSpec(name="shared", cidr="10.9.0.0/16"))
        desired = make_desired(network_id=net.id)
        state = steps.ensure_network(desired, InfrastructureState(), native)
        state = steps.ensure_security_group(desired, state, native)
        group = native.groups[state.external_id(K.SECURITY_GROUP)]
        node_port_ranges = {r.ip_range for r in group.rules if r.port_min == 30000}
        assert node_port_ranges == {"10.9.0.0/16"}

    def test_user_network_never_deleted(self, native: FakeInfraClient):
        net = native._create_network(NetworkSpec(name="shared", cidr="10.9.0.0/16"))
        desired = make_desired(network_id=net.id)
        state = steps.ensure_network(desired, InfrastructureState(), native)
        state = steps.delete_network(desired, state, native)
        assert state.is_empty
        assert net.id in native.networks
        assert native.deletes() == []


# ── TestDeleteSteps ──────────────────────────────────────────────────────


class TestDeleteSteps:
    def test_absent_kind_is_noop(self, native: FakeInfraClient, desired):
        state = steps.delete_subnet(desired, InfrastructureState(), native)
        assert state.is_empty
        assert native.calls == []

    def test_already_gone_forgotten(self, native: FakeInfraClient, desired):
        state = InfrastructureState()
        state.record(K.KEYPAIR, ResourceRecord(external_id="kp-gone", backend=Backend.NATIVE))
        assert steps.delete_keypair(desired, state, native).is_empty

    def test_failure_keeps_record(self, native: FakeInfraClient, desired):
        state = _create_all(desired, native)
        with pytest.raises(CloudAPIError):
            steps.delete_network(desired, state, native)
        assert state.has(K.NETWORK)

    def test_dangling_load_balancers_swept(self, native: FakeInfraClient, desired):
        native.add_load_balancer("svc-a", dict(desired.labels))
        native.add_load_balancer("svc-b", {"infraflow.io/cluster": "other"})
        steps.delete_load_balancer(desired, InfrastructureState(), native)
        assert [lb.name for lb in native.lbs.values()] == ["svc-b"]

    def test_sweep_disabled(self, native: FakeInfraClient):
        desired = make_desired(cleanup_labelled_load_balancers=False)
        native.add_load_balancer("svc-a", dict(desired.labels))
        steps.delete_load_balancer(desired, InfrastructureState(), native)
        assert len(native.lbs) == 1


# ── TestRecovery ─────────────────────────────────────────────────────────


class TestRecovery:
    def test_recover_by_name(self, native: FakeInfraClient, desired):
        _create_all(desired, native)
        state = InfrastructureState()
        rec = steps.recover_network(desired, state, native)
        assert rec.external_id in native.networks
        state.record(K.NETWORK, rec)
        assert steps.recover_subnet(desired, state, native) is not None
        assert steps.recover_security_group(desired, state, native) is not None
        assert steps.recover_keypair(desired, state, native).external_id == desired.keypair_name
        assert steps.recover_load_balancer(desired, state, native) is not None

    def test_nothing_to_recover(self, native: FakeInfraClient, desired):
        state = InfrastructureState()
        assert steps.recover_network(desired, state, native) is None
        assert steps.recover_subnet(desired, state, native) is None
        assert steps.recover_keypair(desired, state, native) is None

    def test_user_network_not_recovered(self, native: FakeInfraClient):
        desired = make_desired(network_id="net-user")
        assert steps.recover_network(desired, InfrastructureState(), native) is None


# ── TestStepLists ────────────────────────────────────────────────────────


class TestStepLists:
    def test_create_order(self):
        assert [s.kind for s in CREATE_STEPS] == list(K)

    def test_delete_order_reversed(self):
        assert [s.kind for s in DELETE_STEPS] == list(reversed(list(K)))

    def test_delete_dependencies(self):
        deps = {s.kind: s.depends_on for s in DELETE_STEPS}
        assert K.LOAD_BALANCER in deps[K.SUBNET]
        assert set(deps[K.NETWORK]) == {K.SUBNET, K.SECURITY_GROUP}
