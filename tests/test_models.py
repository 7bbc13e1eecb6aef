"""Tests for Flotilla data models."""

import pytest
from pydantic import ValidationError

from flotilla.models import (
    ActionKind,
    ActionReason,
    Edge,
    EdgeType,
    FleetAction,
    ResourceDefaults,
    ScalingPolicy,
    WorkItem,
    WorkKind,
    WorkStatus,
)


class TestWorkItem:
    def test_defaults(self):
        item = WorkItem(id="fl-0001", title="Write parser")
        assert item.kind == WorkKind.TASK
        assert item.status == WorkStatus.PENDING
        assert item.priority == 2
        assert item.group is None

    def test_priority_bounds(self):
        with pytest.raises(ValidationError):
            WorkItem(id="fl-0001", priority=5)
        with pytest.raises(ValidationError):
            WorkItem(id="fl-0001", priority=-1)

    def test_terminal_statuses(self):
        assert WorkStatus.DONE.is_terminal
        assert WorkStatus.CANCELLED.is_terminal
        assert not WorkStatus.PENDING.is_terminal
        assert not WorkStatus.IN_PROGRESS.is_terminal
        assert not WorkStatus.BLOCKED.is_terminal


class TestEdgeRules:
    def test_depends_on_accepts_any_kinds(self):
        for source in WorkKind:
            for target in WorkKind:
                assert EdgeType.DEPENDS_ON.rule.check(source, target) is None

    def test_fixes_must_go_task_to_bug(self):
        assert EdgeType.FIXES.rule.check(WorkKind.TASK, WorkKind.BUG) is None
        assert EdgeType.FIXES.rule.check(WorkKind.BUG, WorkKind.TASK) is not None
        assert EdgeType.FIXES.rule.check(WorkKind.TASK, WorkKind.TASK) is not None

    def test_duplicates_needs_same_kind(self):
        assert EdgeType.DUPLICATES.rule.check(WorkKind.BUG, WorkKind.BUG) is None
        problem = EdgeType.DUPLICATES.rule.check(WorkKind.BUG, WorkKind.TASK)
        assert "same kind" in problem

    def test_tests_edge_source_must_be_test(self):
        assert EdgeType.TESTS.rule.check(WorkKind.TEST, WorkKind.TASK) is None
        assert EdgeType.TESTS.rule.check(WorkKind.TASK, WorkKind.TASK) is not None

    def test_only_related_to_is_bidirectional(self):
        assert [t for t in EdgeType if t.is_bidirectional] == [EdgeType.RELATED_TO]

    def test_blocking_types(self):
        assert EdgeType.DEPENDS_ON.is_blocking
        assert EdgeType.BLOCKS.is_blocking
        assert not EdgeType.RELATED_TO.is_blocking


class TestEdge:
    def test_key_and_flip(self):
        edge = Edge(source="a", target="b", edge_type=EdgeType.RELATED_TO, weight=0.5)
        assert edge.key == ("a", "b", "related_to")
        assert edge.bidirectional

        flipped = edge.flipped()
        assert (flipped.source, flipped.target) == ("b", "a")
        assert flipped.weight == 0.5
        assert flipped.created_at == edge.created_at


class TestScalingPolicy:
    def test_min_above_max_rejected(self):
        with pytest.raises(ValidationError):
            ScalingPolicy(min=3, max=1)

    def test_negative_bounds_rejected(self):
        with pytest.raises(ValidationError):
            ScalingPolicy(min=-1, max=1)

    def test_work_aware_zero_ready_is_zero(self):
        assert ScalingPolicy(min=0, max=3, work_aware=True).desired(0) == 0
        # Work-aware ignores min when nothing is ready
        assert ScalingPolicy(min=2, max=3, work_aware=True).desired(0) == 0

    def test_work_aware_clamps(self):
        policy = ScalingPolicy(min=0, max=3, work_aware=True)
        assert policy.desired(5) == 3
        assert policy.desired(2) == 2
        assert ScalingPolicy(min=2, max=4, work_aware=True).desired(1) == 2

    def test_not_work_aware_uses_min(self):
        policy = ScalingPolicy(min=1, max=5)
        assert policy.desired(0) == 1
        assert policy.desired(100) == 1


class TestResourceDefaults:
    def test_override_field_by_field(self):
        base = ResourceDefaults(cpus=2, memory="4g")
        merged = base.merged(ResourceDefaults(memory="8g"))
        assert merged.cpus == 2
        assert merged.memory == "8g"

    def test_none_override_copies(self):
        base = ResourceDefaults(cpus=1)
        assert base.merged(None) == base


class TestFleetAction:
    def test_signs(self):
        assert ActionKind.SPAWN.sign == 1
        assert ActionKind.STOP.sign == -1

    @pytest.mark.parametrize(
        "reason,force,expected",
        [
            (ActionReason.SCALE_UP, False, False),
            (ActionReason.SCALE_DOWN, False, False),
            (ActionReason.SCALE_DOWN, True, True),
            (ActionReason.GOODBYE, False, True),
            (ActionReason.STALE, False, True),
            (ActionReason.MANUAL, False, True),
        ],
    )
    def test_bypasses_cooldown(self, reason, force, expected):
        action = FleetAction(kind=ActionKind.STOP, agent_type="worker", reason=reason, force=force)
        assert action.bypasses_cooldown is expected

    def test_empty_type_rejected(self):
        with pytest.raises(ValidationError):
            FleetAction(kind=ActionKind.SPAWN, agent_type="", reason=ActionReason.MANUAL)

    def test_json_dump(self):
        action = FleetAction(kind=ActionKind.SPAWN, agent_type="worker", reason=ActionReason.SCALE_UP)
        data = action.model_dump(mode="json")
        assert data["kind"] == "spawn"
        assert data["reason"] == "scale_up"
        assert data["executed"] is False
