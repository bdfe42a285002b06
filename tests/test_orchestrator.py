import threading

import pytest

from nodepool_sequencer.errors import (
    NodePoolNotFoundError,
    PoolBusyError,
    PreconditionError,
    SessionNotFoundError,
    ValidationError,
)
from nodepool_sequencer.models import NodePoolRef, NodePoolUpdate, SessionStatus
from nodepool_sequencer.orchestrator import Orchestrator
from nodepool_sequencer.settings import Settings
from tests.conftest import make_payload, make_request

ORIGIN_NODES = ["aks-nodepool1-0000", "aks-nodepool1-0001", "aks-nodepool1-0002"]


def test_runs_session_in_background(orchestrator, cluster):
    session = orchestrator.create_session(make_payload())
    finished = orchestrator.wait(session.id, timeout=10)

    assert finished is session
    assert session.status == SessionStatus.COMPLETED
    assert orchestrator.registry.locked_pools() == {}
    assert len(cluster.evicted) == 6


def test_invalid_request_creates_nothing(orchestrator, cluster):
    with pytest.raises(ValidationError) as exc:
        orchestrator.create_session(make_payload(cordon_enabled=False))
    assert "drain requires cordon enabled" in exc.value.errors
    assert orchestrator.list_sessions() == []
    assert cluster.calls == []


def test_structural_errors_are_validation_errors(orchestrator):
    with pytest.raises(ValidationError):
        orchestrator.create_session({"cluster": "aks-prod-01", "node_pools": []})


def test_pool_lock_is_released_when_session_ends(orchestrator, cluster):
    cluster.scale_gate = threading.Event()
    first = orchestrator.create_session(make_request())

    with pytest.raises(PoolBusyError):
        orchestrator.create_session(make_request())

    cluster.scale_gate.set()
    orchestrator.wait(first.id, timeout=10)
    assert first.terminal

    second = orchestrator.create_session(make_request(cordon_enabled=False, drain_enabled=False))
    orchestrator.wait(second.id, timeout=10)
    assert second.status == SessionStatus.COMPLETED


def test_cancel_running_session(orchestrator, cluster):
    cluster.scale_gate = threading.Event()
    session = orchestrator.create_session(make_request())
    orchestrator.cancel(session.id)
    cluster.scale_gate.set()
    orchestrator.wait(session.id, timeout=10)

    assert session.status == SessionStatus.FAILED
    assert session.error == "cancelled"
    assert cluster.calls_named("cordon") == []


def test_uncordon_origin_after_failed_drain(orchestrator, cluster):
    cluster.add_pod("aks-nodepool1-0001", "cache", has_empty_dir=True)
    session = orchestrator.create_session(make_request())
    orchestrator.wait(session.id, timeout=10)
    assert session.failed_phase == 3
    assert all(cluster.node(n).unschedulable for n in ORIGIN_NODES)

    assert orchestrator.uncordon_origin(session.id) == ORIGIN_NODES
    assert not any(cluster.node(n).unschedulable for n in ORIGIN_NODES)


def test_uncordon_refused_while_running(orchestrator, cluster):
    cluster.scale_gate = threading.Event()
    session = orchestrator.create_session(make_request())
    try:
        with pytest.raises(PreconditionError):
            orchestrator.uncordon_origin(session.id)
        with pytest.raises(PreconditionError):
            orchestrator.uncordon_pool(session.origin.ref)
    finally:
        cluster.scale_gate.set()
        orchestrator.wait(session.id, timeout=10)


def test_run_sync_and_purge(cluster):
    orchestrator = Orchestrator(cluster, Settings(session_retention=0, readiness_poll_interval=0.01))
    session = orchestrator.create_session(make_request(), start=False)
    orchestrator.run_sync(session)
    assert session.status == SessionStatus.COMPLETED

    assert orchestrator.purge_expired() == [session.id]
    with pytest.raises(SessionNotFoundError):
        orchestrator.get_session(session.id)


def test_subscribe_unknown_session(orchestrator):
    with pytest.raises(SessionNotFoundError):
        orchestrator.subscribe("aks-prod-01_missing")


def pool_ref(name="nodepool1"):
    return NodePoolRef(name=name, cluster="aks-prod-01", resource_group="rg-prod")


def test_list_node_pools(orchestrator, cluster):
    cluster.add_pool("nodepool2", 1)
    pools = orchestrator.list_node_pools("aks-prod-01", "rg-prod")
    assert [(p.name, p.node_count) for p in pools] == [("nodepool1", 3), ("nodepool2", 1)]
    assert all(p.resource_group == "rg-prod" for p in pools)


def test_update_node_pool_cordons_and_drains_first(orchestrator, cluster):
    update = NodePoolUpdate.from_dict({
        "node_count": 0,
        "cordon_drain_config": {"cordon_enabled": True, "drain_enabled": True},
    })
    info = orchestrator.update_node_pool(pool_ref(), update)

    assert info.node_count == 0
    assert sorted(c[1] for c in cluster.calls_named("cordon")) == ORIGIN_NODES
    assert len(cluster.evicted) == 6
    actions = [c[0] for c in cluster.calls if c[0] in ("cordon", "evict", "scale")]
    assert actions.index("scale") > max(i for i, a in enumerate(actions) if a == "evict")


def test_update_node_pool_without_drain_only_scales(orchestrator, cluster):
    info = orchestrator.update_node_pool(pool_ref(), NodePoolUpdate.from_dict(
        {"autoscaling_enabled": True, "min_node_count": 4, "max_node_count": 6}))

    assert info.autoscaling_enabled
    assert (info.min_nodes, info.max_nodes, info.node_count) == (4, 6, 4)
    assert cluster.calls_named("cordon") == []
    assert cluster.evicted == []


def test_update_unknown_pool(orchestrator, cluster):
    with pytest.raises(NodePoolNotFoundError):
        orchestrator.update_node_pool(pool_ref("nodepool9"), NodePoolUpdate.from_dict({"node_count": 1}))
    assert cluster.scaled == []


def test_update_node_pool_is_validated(orchestrator, cluster):
    update = NodePoolUpdate.from_dict({
        "autoscaling_enabled": False,
        "cordon_drain_config": {"cordon_enabled": False, "drain_enabled": True},
    })
    with pytest.raises(ValidationError) as exc:
        orchestrator.update_node_pool(pool_ref(), update)
    assert "drain requires cordon enabled" in exc.value.errors
    assert "nodepool1: desired_count is required when autoscaling is disabled" in exc.value.errors
    assert cluster.calls == []


def test_update_refused_while_pool_is_sequenced(orchestrator, cluster):
    cluster.scale_gate = threading.Event()
    session = orchestrator.create_session(make_payload())
    try:
        with pytest.raises(PoolBusyError):
            orchestrator.update_node_pool(pool_ref(), NodePoolUpdate.from_dict({"node_count": 1}))
    finally:
        cluster.scale_gate.set()
        orchestrator.wait(session.id, timeout=10)
