"""
Tests for the Traffic Shifter

Tests percentage progression, validation, rollback semantics and the
audit history of a blue/green shift.
"""
from datetime import datetime, timezone

import pytest

from deploykit.errors import NotFoundError, ValidationError
from deploykit.rollout import (
    ShiftStatus,
    TrafficShiftConfig,
    TrafficShiftState,
    TrafficShifter,
    TrafficSplit,
)


class TestTrafficShifter:
    """Test suite for TrafficShifter"""

    @pytest.fixture
    def shifter(self, clock):
        return TrafficShifter(clock=clock)

    @pytest.fixture
    def config(self):
        return TrafficShiftConfig(initial_percentage=10)

    # ===== Positive Test Cases =====

    def test_start_shift_records_initial_event(self, shifter, config, clock):
        state = shifter.start_shift("deploy-1", "1.0.0", "1.1.0", config)

        assert state.current_percentage == 10
        assert state.status == ShiftStatus.STARTING
        assert state.start_time == clock.now
        assert len(state.history) == 1

        event = state.history[0]
        assert event.from_percentage == 0
        assert event.to_percentage == 10
        assert event.reason == "Initial canary traffic shift"
        assert event.success is True

    def test_next_target_after_start(self, shifter, config):
        shifter.start_shift("deploy-1", "1.0.0", "1.1.0", config)

        assert shifter.get_next_target("deploy-1", config) == 35

    def test_next_target_capped_at_final(self, shifter):
        config = TrafficShiftConfig(initial_percentage=40, increment_percentage=50,
                                    final_percentage=80)
        shifter.start_shift("deploy-1", "1.0.0", "1.1.0", config)

        assert shifter.get_next_target("deploy-1", config) == 80

    @pytest.mark.parametrize("initial", [50, 100])
    def test_next_target_none_when_starting_at_final(self, shifter, initial):
        config = TrafficShiftConfig(initial_percentage=initial, final_percentage=initial)
        shifter.start_shift("deploy-1", "1.0.0", "1.1.0", config)

        assert shifter.get_next_target("deploy-1", config) is None

    def test_update_traffic_progression(self, shifter, config):
        shifter.start_shift("deploy-1", "1.0.0", "1.1.0", config)

        state = shifter.update_traffic("deploy-1", 50, "Step up")
        assert state.current_percentage == 50
        assert state.status == ShiftStatus.IN_PROGRESS

        state = shifter.update_traffic("deploy-1", 100, "Full cutover")
        assert state.current_percentage == 100
        assert state.status == ShiftStatus.COMPLETED
        assert [(e.from_percentage, e.to_percentage) for e in state.history] == [
            (0, 10), (10, 50), (50, 100)
        ]

    def test_update_traffic_updates_last_update_time(self, shifter, config, clock):
        shifter.start_shift("deploy-1", "1.0.0", "1.1.0", config)
        clock.advance(minutes=2)

        state = shifter.update_traffic("deploy-1", 35, "Step")

        assert state.last_update_time == clock.now

    def test_rollback_resets_to_zero(self, shifter, config):
        shifter.start_shift("deploy-1", "1.0.0", "1.1.0", config)
        shifter.update_traffic("deploy-1", 60, "Step")

        state = shifter.rollback("deploy-1", "Error spike")

        assert state.current_percentage == 0
        assert state.status == ShiftStatus.ROLLED_BACK
        last = state.history[-1]
        assert (last.from_percentage, last.to_percentage, last.reason) == (60, 0, "Error spike")

    def test_rollback_is_idempotent_in_effect(self, shifter, config):
        shifter.start_shift("deploy-1", "1.0.0", "1.1.0", config)

        first = shifter.rollback("deploy-1", "first")
        second = shifter.rollback("deploy-1", "second")

        assert second.current_percentage == 0
        assert second.status == ShiftStatus.ROLLED_BACK
        assert first is second

    def test_rollback_after_completion(self, shifter, config):
        shifter.start_shift("deploy-1", "1.0.0", "1.1.0", config)
        shifter.update_traffic("deploy-1", 100, "Cutover")

        state = shifter.rollback("deploy-1", "Late regression")

        assert state.current_percentage == 0
        assert state.status == ShiftStatus.ROLLED_BACK

    def test_no_next_target_after_rollback(self, shifter, config):
        shifter.start_shift("deploy-1", "1.0.0", "1.1.0", config)
        shifter.rollback("deploy-1", "abort")

        assert shifter.get_next_target("deploy-1", config) is None

    def test_ready_for_next_increment(self, shifter, config, clock):
        shifter.start_shift("deploy-1", "1.0.0", "1.1.0", config)

        assert shifter.is_ready_for_next_increment("deploy-1", 300) is False
        clock.advance(seconds=299)
        assert shifter.is_ready_for_next_increment("deploy-1", 300) is False
        clock.advance(seconds=1)
        assert shifter.is_ready_for_next_increment("deploy-1", 300) is True
        assert shifter.get_time_since_last_update("deploy-1") == 300

    def test_summary(self, shifter, config, clock):
        shifter.start_shift("deploy-1", "1.0.0", "1.1.0", config)
        shifter.update_traffic("deploy-1", 35, "Step")
        clock.advance(seconds=90)

        summary = shifter.get_summary("deploy-1")

        assert summary.current_percentage == 35
        assert summary.status == "in-progress"
        assert summary.duration == 90
        assert summary.events_count == 2
        assert summary.success_count == 2
        assert summary.to_dict()["events_count"] == 2

    def test_traffic_split(self, shifter, config):
        shifter.start_shift("deploy-1", "1.0.0", "1.1.0", config)

        assert shifter.traffic_split("deploy-1") == TrafficSplit(blue_weight=90, green_weight=10)

    def test_clear_removes_state(self, shifter, config):
        shifter.start_shift("deploy-1", "1.0.0", "1.1.0", config)

        shifter.clear("deploy-1")
        shifter.clear("deploy-1")

        assert shifter.get_state("deploy-1") is None
        # a cleared id can be started again
        state = shifter.start_shift("deploy-1", "1.1.0", "1.2.0", config)
        assert state.blue_version == "1.1.0"

    def test_state_loads_timestamps_written_by_other_tools(self):
        state = TrafficShiftState.from_dict({
            "deployment_id": "deploy-1",
            "blue_version": "1.0.0",
            "green_version": "1.1.0",
            "current_percentage": 10,
            "status": "starting",
            "start_time": "2024-01-01T12:00:00Z",
            "last_update_time": "2024-01-01T12:05:00",
            "history": [{"timestamp": "2024-01-01T12:00:00Z", "from_percentage": 0,
                         "to_percentage": 10, "reason": "Initial canary traffic shift"}],
        })

        assert state.start_time == datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)
        assert state.last_update_time == datetime(2024, 1, 1, 12, 5, tzinfo=timezone.utc)
        assert state.history[0].timestamp.tzinfo is not None

    def test_state_round_trips_through_dict(self, shifter, config):
        state = shifter.start_shift("deploy-1", "1.0.0", "1.1.0", config)
        shifter.update_traffic("deploy-1", 35, "Step")

        restored = type(state).from_dict(state.to_dict())

        assert restored == state

    # ===== Negative Test Cases =====

    @pytest.mark.parametrize("target", [-1, 101, 150])
    def test_update_traffic_rejects_out_of_range(self, shifter, config, target):
        shifter.start_shift("deploy-1", "1.0.0", "1.1.0", config)

        with pytest.raises(ValidationError, match="Invalid target_percentage"):
            shifter.update_traffic("deploy-1", target, "bad")

        state = shifter.get_state("deploy-1")
        assert state.current_percentage == 10
        assert len(state.history) == 1

    def test_update_traffic_rejects_decrease(self, shifter, config):
        shifter.start_shift("deploy-1", "1.0.0", "1.1.0", config)
        shifter.update_traffic("deploy-1", 50, "Step")

        with pytest.raises(ValidationError, match="Cannot decrease"):
            shifter.update_traffic("deploy-1", 20, "Back off")

        assert shifter.get_state("deploy-1").current_percentage == 50

    def test_update_traffic_rejected_after_rollback(self, shifter, config):
        shifter.start_shift("deploy-1", "1.0.0", "1.1.0", config)
        shifter.rollback("deploy-1", "abort")

        with pytest.raises(ValidationError, match="rolled back"):
            shifter.update_traffic("deploy-1", 50, "Resume")

        assert shifter.get_state("deploy-1").current_percentage == 0

    @pytest.mark.parametrize("kwargs", [
        {"initial_percentage": -5},
        {"initial_percentage": 120},
        {"initial_percentage": 10, "increment_percentage": 0},
        {"initial_percentage": 10, "final_percentage": 101},
        {"initial_percentage": 90, "final_percentage": 50},
        {"initial_percentage": 10, "increment_interval": "5m"},
        {"initial_percentage": 10, "increment_interval": True},
        {"initial_percentage": 10, "increment_interval": -1.0},
    ])
    def test_start_shift_rejects_invalid_config(self, shifter, kwargs):
        with pytest.raises(ValidationError):
            shifter.start_shift("deploy-1", "1.0.0", "1.1.0", TrafficShiftConfig(**kwargs))

        assert shifter.get_state("deploy-1") is None

    def test_start_shift_rejects_existing_id(self, shifter, config):
        shifter.start_shift("deploy-1", "1.0.0", "1.1.0", config)

        with pytest.raises(ValidationError, match="already exists"):
            shifter.start_shift("deploy-1", "1.0.0", "1.2.0", config)

    @pytest.mark.parametrize("operation", [
        lambda s: s.get_next_target("missing", TrafficShiftConfig(initial_percentage=0)),
        lambda s: s.update_traffic("missing", 50, "x"),
        lambda s: s.rollback("missing", "x"),
        lambda s: s.is_ready_for_next_increment("missing", 60),
        lambda s: s.get_summary("missing"),
    ])
    def test_unknown_deployment_raises_not_found(self, shifter, operation):
        with pytest.raises(NotFoundError, match="missing"):
            operation(shifter)
