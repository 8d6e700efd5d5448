"""Tests for the range and round-robin assignors."""

import pytest

from kafka_client.group.assignors import (
    RangePartitionAssignor,
    RoundRobinPartitionAssignor,
    assignor_for,
)
from kafka_client.structs import TopicPartition


def tps(topic, *partitions):
    return frozenset(TopicPartition(topic, p) for p in partitions)


ASSIGNORS = [RangePartitionAssignor(), RoundRobinPartitionAssignor()]


class TestAssignmentProperties:
    """Properties every assignor must hold."""

    @pytest.mark.parametrize("assignor", ASSIGNORS, ids=lambda a: a.name)
    @pytest.mark.parametrize("member_count", [1, 2, 3, 5, 8])
    def test_covers_every_partition_once(self, assignor, member_count):
        """Every partition goes to exactly one member."""
        topics = {"events": list(range(6)), "audit": list(range(3))}
        members = {f"member-{i}": ["events", "audit"] for i in range(member_count)}

        result = assignor.assign(topics, members)

        assert set(result) == set(members)
        owned = [tp for parts in result.values() for tp in parts]
        assert len(owned) == len(set(owned)) == 9

    @pytest.mark.parametrize("assignor", ASSIGNORS, ids=lambda a: a.name)
    def test_balanced(self, assignor):
        """Members differ by at most one partition for a single topic."""
        members = {"a": ["events"], "b": ["events"], "c": ["events"]}
        result = assignor.assign({"events": list(range(7))}, members)
        sizes = sorted(len(parts) for parts in result.values())
        assert sizes == [2, 2, 3]

    @pytest.mark.parametrize("assignor", ASSIGNORS, ids=lambda a: a.name)
    def test_independent_of_input_order(self, assignor):
        """Join order and metadata order do not change the result."""
        first = assignor.assign({"a": [2, 0, 1], "b": [1, 0]}, {"m2": ["a", "b"], "m1": ["a", "b"]})
        second = assignor.assign({"b": [0, 1], "a": [0, 1, 2]}, {"m1": ["b", "a"], "m2": ["a", "b"]})
        assert first == second

    @pytest.mark.parametrize("assignor", ASSIGNORS, ids=lambda a: a.name)
    def test_unsubscribed_topic_not_assigned(self, assignor):
        """Members only receive partitions of topics they subscribe to."""
        result = assignor.assign(
            {"events": [0, 1], "audit": [0, 1]},
            {"a": ["events"], "b": ["events", "audit"]},
        )
        assert all(tp.topic == "events" for tp in result["a"])
        assert tps("audit", 0, 1) <= result["b"]

    @pytest.mark.parametrize("assignor", ASSIGNORS, ids=lambda a: a.name)
    def test_more_members_than_partitions(self, assignor):
        """Extra members get an empty assignment."""
        result = assignor.assign({"events": [0]}, {"a": ["events"], "b": ["events"]})
        assert result == {"a": tps("events", 0), "b": frozenset()}


class TestRangeAssignor:
    """Tests for contiguous ranges."""

    def test_seven_partitions_three_members(self):
        """The first members get the remainder."""
        result = RangePartitionAssignor().assign(
            {"events": list(range(7))}, {"c": ["events"], "a": ["events"], "b": ["events"]}
        )
        assert result == {
            "a": tps("events", 0, 1, 2),
            "b": tps("events", 3, 4),
            "c": tps("events", 5, 6),
        }

    def test_per_topic_ranges(self):
        """Each topic is split on its own."""
        result = RangePartitionAssignor().assign(
            {"x": [0, 1], "y": [0, 1]}, {"a": ["x", "y"], "b": ["x", "y"]}
        )
        assert result["a"] == tps("x", 0) | tps("y", 0)
        assert result["b"] == tps("x", 1) | tps("y", 1)


class TestRoundRobinAssignor:
    """Tests for dealing partitions in turn."""

    def test_deals_across_topics(self):
        """Partitions of all topics are dealt in one sequence."""
        result = RoundRobinPartitionAssignor().assign(
            {"x": [0, 1, 2], "y": [0]}, {"a": ["x", "y"], "b": ["x", "y"]}
        )
        assert result["a"] == tps("x", 0, 2)
        assert result["b"] == tps("x", 1) | tps("y", 0)

    def test_no_members(self):
        """No members, no assignment."""
        assert RoundRobinPartitionAssignor().assign({"x": [0]}, {}) == {}


class TestAssignorLookup:
    """Tests for assignor_for."""

    def test_known_names(self):
        """Protocol names map to assignor instances."""
        assert isinstance(assignor_for("range"), RangePartitionAssignor)
        assert isinstance(assignor_for("roundrobin"), RoundRobinPartitionAssignor)

    def test_unknown_name(self):
        """Unknown strategies are rejected."""
        with pytest.raises(ValueError, match="sticky"):
            assignor_for("sticky")
