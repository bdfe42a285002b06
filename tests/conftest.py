import copy

import pytest

from nodepool_sequencer.bus import ProgressBus
from nodepool_sequencer.models import SequenceRequest
from nodepool_sequencer.orchestrator import Orchestrator
from nodepool_sequencer.settings import Settings
from nodepool_sequencer.testing import InMemoryNodeOperator

BASE_PAYLOAD = {
    "cluster": "aks-prod-01",
    "node_pools": [
        {
            "name": "nodepool1",
            "resource_group": "rg-prod",
            "subscription": "sub-1",
            "sequence_order": 1,
            "pre_drain_changes": None,
            "post_drain_changes": {"autoscaling": False, "node_count": 0, "min_nodes": 0, "max_nodes": 0},
        },
        {
            "name": "nodepool2",
            "resource_group": "rg-prod",
            "subscription": "sub-1",
            "sequence_order": 2,
            "pre_drain_changes": {"autoscaling": True, "node_count": 0, "min_nodes": 2, "max_nodes": 5},
            "post_drain_changes": None,
        },
    ],
    "cordon_enabled": True,
    "drain_enabled": True,
    "drain_options": {
        "ignore_daemonsets": True,
        "delete_emptydir_data": False,
        "force": False,
        "grace_period": 30,
        "timeout": "5m",
        "skip_wait_for_delete_timeout": 1,
        "chunk_size": 2,
    },
}


def make_payload(drain_options=None, **overrides):
    payload = copy.deepcopy(BASE_PAYLOAD)
    payload.update(overrides)
    if drain_options:
        payload["drain_options"].update(drain_options)
    return payload


def make_request(drain_options=None, **overrides) -> SequenceRequest:
    return SequenceRequest.from_dict(make_payload(drain_options, **overrides))


@pytest.fixture()
def settings():
    return Settings(
        readiness_window=0.3,
        readiness_poll_interval=0.02,
        termination_poll_interval=0.01,
        retry_backoff=0.001,
        retry_backoff_max=0.01,
        heartbeat_interval=0.05,
        session_retention=60,
    )


@pytest.fixture()
def cluster():
    cluster = InMemoryNodeOperator()
    cluster.add_pool("nodepool1", 3, pods_per_node=2)
    return cluster


@pytest.fixture()
def bus():
    return ProgressBus()


@pytest.fixture()
def orchestrator(cluster, settings):
    return Orchestrator(cluster, settings)
