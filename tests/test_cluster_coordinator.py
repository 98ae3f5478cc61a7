"""Tests for node registry, primary election and global count publication."""

from __future__ import annotations

import json

import pytest

from adaptive_limiter.adapters.cache import InMemoryPubSubChannel
from adaptive_limiter.schemas.cluster import GlobalLimitState
from adaptive_limiter.services.cluster_coordinator import DEFAULT_PREFIX, ClusterCoordinator


@pytest.fixture
def channel() -> InMemoryPubSubChannel:
    return InMemoryPubSubChannel()


def _node(cache, clock, channel, node_id, **kwargs) -> ClusterCoordinator:
    return ClusterCoordinator(
        cache,
        channel=channel,
        node_id=node_id,
        clock=clock,
        auto_register=False,
        **kwargs,
    )


def _cluster(cache, clock, channel, *node_ids) -> dict[str, ClusterCoordinator]:
    nodes = {node_id: _node(cache, clock, channel, node_id) for node_id in node_ids}
    for node in nodes.values():
        node.refresh_node()
    return nodes


class TestElection:
    def test_smallest_node_id_wins(self, cache, clock, channel):
        nodes = _cluster(cache, clock, channel, "b", "a", "c")

        results = {node_id: node.elect_primary() for node_id, node in nodes.items()}

        assert results == {"b": False, "a": True, "c": False}
        assert nodes["a"].is_primary_coordinator()
        assert nodes["a"].primary_node_id() == "a"

    def test_existing_primary_is_respected(self, cache, clock, channel):
        nodes = _cluster(cache, clock, channel, "b", "c")
        assert nodes["b"].elect_primary() is True

        late = _node(cache, clock, channel, "a")
        late.refresh_node()

        assert late.elect_primary() is False
        assert nodes["b"].elect_primary() is True

    def test_failover_when_primary_disappears(self, cache, clock, channel):
        nodes = _cluster(cache, clock, channel, "a", "b", "c")
        nodes["a"].elect_primary()

        cache.delete(DEFAULT_PREFIX + "nodes:a")

        assert nodes["b"].elect_primary() is True
        assert nodes["c"].elect_primary() is False

    def test_lone_node_becomes_primary(self, cache, clock, channel, audit):
        node = _node(cache, clock, channel, "only", audit=audit)

        assert node.elect_primary() is True
        assert audit.find("rate_limit_distributor_became_primary_coordinator")

    def test_busy_election_lock_skips_round(self, cache, clock, channel):
        node = _node(cache, clock, channel, "a")
        node.refresh_node()
        cache.set_if_absent(DEFAULT_PREFIX + "lock:coordinator_election", "someone-else", 5)

        assert node.elect_primary() is False
        assert node.is_primary_coordinator() is False

        clock.advance(6)
        assert node.elect_primary() is True

    def test_election_releases_its_lock(self, cache, clock, channel):
        node = _node(cache, clock, channel, "a")
        node.elect_primary()

        assert cache.get(DEFAULT_PREFIX + "lock:coordinator_election") is None

    def test_register_node_registers_and_elects(self, cache, clock, channel):
        node = ClusterCoordinator(cache, channel=channel, node_id="a", clock=clock)

        assert node.is_primary_coordinator()
        assert set(node.get_nodes()) == {"a"}


class TestSingleNodeMode:
    def test_always_primary_without_channel(self, cache, clock):
        node = ClusterCoordinator(cache, node_id="solo", clock=clock)

        assert node.single_node is True
        assert node.is_primary_coordinator() is True
        assert node.elect_primary() is True

    def test_updates_are_stored_but_not_published(self, cache, clock):
        node = ClusterCoordinator(cache, node_id="solo", clock=clock)

        assert node.update_global_limit("ip:1.2.3.4", 3, 10, 60) is True
        assert node.get_global_limit("ip:1.2.3.4").count == 3


class TestGlobalLimits:
    def test_update_publishes_notification(self, cache, clock, channel):
        node = ClusterCoordinator(cache, channel=channel, node_id="a", clock=clock)

        assert node.update_global_limit("ip:1.2.3.4", 4, 10, 60) is True

        state = node.get_global_limit("ip:1.2.3.4")
        assert state == GlobalLimitState(
            key="ip:1.2.3.4", count=4, max=10, window_seconds=60, updated_at=clock.now, node_id="a"
        )
        channel_name, message = channel.messages[-1]
        assert channel_name == DEFAULT_PREFIX + "limit_updates"
        assert json.loads(message) == {"action": "update", "data": state.model_dump()}

    def test_update_clamps_values(self, cache, clock, channel):
        node = ClusterCoordinator(cache, channel=channel, node_id="a", clock=clock)
        node.update_global_limit("k", -3, 0, 0)

        state = node.get_global_limit("k")
        assert (state.count, state.max, state.window_seconds) == (0, 1, 1)

    def test_busy_key_lock_skips_update(self, cache, clock, channel):
        node = ClusterCoordinator(cache, channel=channel, node_id="a", clock=clock)
        cache.set_if_absent(DEFAULT_PREFIX + "lock:ip:1.2.3.4", "other", 2)

        assert node.update_global_limit("ip:1.2.3.4", 1, 10, 60) is False
        assert node.get_global_limit("ip:1.2.3.4") is None

    def test_publish_failure_does_not_fail_update(self, cache, clock, channel):
        def boom(channel_name, message):
            raise RuntimeError("subscriber crashed")

        channel.subscribe("*", boom)
        node = ClusterCoordinator(cache, channel=channel, node_id="a", clock=clock)

        assert node.update_global_limit("k", 1, 10, 60) is True

    def test_unknown_key(self, cache, clock):
        node = ClusterCoordinator(cache, node_id="solo", clock=clock)

        assert node.get_global_limit("nope") is None

    def test_sync_purges_stale_entries_on_primary(self, cache, clock, channel, audit):
        node = ClusterCoordinator(cache, channel=channel, node_id="a", clock=clock, audit=audit)
        node.update_global_limit("old", 1, 10, 60)
        clock.advance(86401)
        node.update_global_limit("fresh", 1, 10, 60)

        assert node.synchronize_global_limits() == 1
        assert node.get_global_limit("old") is None
        assert node.get_global_limit("fresh") is not None
        assert audit.find("rate_limit_distributor_limits_cleaned_up")[0]["context"]["count"] == 1

    def test_sync_is_primary_only(self, cache, clock, channel):
        nodes = _cluster(cache, clock, channel, "a", "b")
        nodes["a"].elect_primary()
        nodes["b"].elect_primary()
        nodes["a"].update_global_limit("old", 1, 10, 60)
        clock.advance(86401)

        assert nodes["b"].synchronize_global_limits() == 0
        assert nodes["b"].get_global_limit("old") is not None


class TestNodeCleanup:
    def test_primary_removes_stale_nodes(self, cache, clock, channel):
        nodes = _cluster(cache, clock, channel, "a", "b", "c")
        nodes["a"].elect_primary()

        clock.advance(301)
        nodes["a"].refresh_node()

        assert nodes["a"].cleanup_inactive_nodes() == 2
        assert set(nodes["a"].get_nodes()) == {"a"}
        assert nodes["a"].is_primary_coordinator()

    def test_custom_max_age(self, cache, clock, channel):
        nodes = _cluster(cache, clock, channel, "a", "b")
        nodes["a"].elect_primary()
        clock.advance(20)
        nodes["a"].refresh_node()

        assert nodes["a"].cleanup_inactive_nodes(max_age_seconds=10) == 1

    def test_secondary_does_not_clean_up(self, cache, clock, channel):
        nodes = _cluster(cache, clock, channel, "a", "b")
        nodes["a"].elect_primary()
        nodes["b"].elect_primary()
        clock.advance(301)

        assert nodes["b"].cleanup_inactive_nodes() == 0
        assert set(nodes["b"].get_nodes()) == {"a", "b"}

    def test_busy_cleanup_lock(self, cache, clock, channel):
        nodes = _cluster(cache, clock, channel, "a", "b")
        nodes["a"].elect_primary()
        clock.advance(301)
        cache.set_if_absent(DEFAULT_PREFIX + "lock:node_cleanup", "other", 5)

        assert nodes["a"].cleanup_inactive_nodes() == 0

    def test_corrupt_node_record_is_skipped(self, cache, clock, channel):
        nodes = _cluster(cache, clock, channel, "a")
        cache.set(DEFAULT_PREFIX + "nodes:broken", "{nope")

        assert set(nodes["a"].get_nodes()) == {"a"}


def test_heartbeat_runs_maintenance(cache, clock, channel):
    node = ClusterCoordinator(cache, channel=channel, node_id="a", clock=clock)
    peer = _node(cache, clock, channel, "z")
    peer.refresh_node()
    clock.advance(301)

    result = node.heartbeat()

    assert result == {"is_primary": True, "synchronized": 0, "removed_nodes": 1}


class TestFailover:
    def test_crashed_primary_is_replaced(self, cache, clock, channel):
        nodes = _cluster(cache, clock, channel, "a", "b")
        assert nodes["a"].elect_primary() is True
        assert nodes["b"].elect_primary() is False

        # "a" stops heart-beating; only "b" keeps its 30s cycle.
        results = []
        for _ in range(240):
            clock.advance(30)
            results.append(nodes["b"].heartbeat())

        assert nodes["b"].is_primary_coordinator()
        assert nodes["b"].primary_node_id() == "b"
        assert set(nodes["b"].get_nodes()) == {"b"}
        assert sum(result["removed_nodes"] for result in results) == 1

    def test_takeover_happens_once_primary_goes_stale(self, cache, clock, channel):
        nodes = _cluster(cache, clock, channel, "a", "b")
        nodes["a"].elect_primary()

        clock.advance(290)
        nodes["b"].refresh_node()
        assert nodes["b"].elect_primary() is False

        clock.advance(20)
        assert nodes["b"].elect_primary() is True

    def test_stale_records_never_win_election(self, cache, clock, channel):
        stale = _node(cache, clock, channel, "a")
        stale.refresh_node()
        clock.advance(301)
        live = _node(cache, clock, channel, "b")
        live.refresh_node()

        assert live.elect_primary() is True


class TestRecordExpiry:
    def test_node_records_expire_without_a_primary(self, cache, clock, channel):
        node = _node(cache, clock, channel, "a")
        node.refresh_node()

        assert cache.ttl(DEFAULT_PREFIX + "nodes:a") == 3600
        clock.advance(3600)
        assert node.get_nodes() == {}

    def test_refresh_renews_node_ttl(self, cache, clock, channel):
        node = _node(cache, clock, channel, "a")
        node.refresh_node()
        clock.advance(3000)
        node.refresh_node()
        clock.advance(3000)

        assert set(node.get_nodes()) == {"a"}

    def test_global_limit_entries_expire(self, cache, clock, channel):
        node = ClusterCoordinator(cache, channel=channel, node_id="a", clock=clock)
        node.update_global_limit("ip:1.2.3.4", 1, 10, 60)

        assert cache.ttl(DEFAULT_PREFIX + "global_limits:ip:1.2.3.4") == 2 * 86400
        clock.advance(2 * 86400)
        assert node.get_global_limit("ip:1.2.3.4") is None
