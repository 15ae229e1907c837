"""Tests for rotation resolution."""

import uuid
from datetime import UTC, date, datetime, time, timedelta
from zoneinfo import ZoneInfo

import pytest

from pulsar_escalation.core.errors import RotationConfigError
from pulsar_escalation.models.schedule import (
    RotationType,
    ScheduleRotation,
    ScheduleRotationParticipant,
)
from pulsar_escalation.services.rotation import (
    next_rotation_change,
    resolve_rotation,
    validate_rotation_config,
)

MONDAY = date(2024, 1, 1)


def make_rotation(
    rotation_type: RotationType = RotationType.WEEKLY,
    rotation_length: int = 1,
    participants: int = 2,
    start_date: date = MONDAY,
    start_time: time = time(0, 0),
    end_time: time | None = None,
    handoff_day: int | None = None,
    handoff_time: time | None = None,
) -> ScheduleRotation:
    """Create an in-memory rotation with participants at positions 0..n-1."""
    return ScheduleRotation(
        id=uuid.uuid4(),
        schedule_id=uuid.uuid4(),
        name="Primary",
        rotation_type=rotation_type,
        rotation_length=rotation_length,
        start_date=start_date,
        start_time=start_time,
        end_time=end_time,
        handoff_day=handoff_day,
        handoff_time=handoff_time,
        created_at=datetime(2023, 12, 1, tzinfo=UTC),
        participants=[
            ScheduleRotationParticipant(
                id=uuid.uuid4(), user_id=uuid.uuid4(), position=position
            )
            for position in range(participants)
        ],
    )


def user_at(rotation: ScheduleRotation, index: int) -> uuid.UUID:
    ordered = sorted(rotation.participants, key=lambda p: p.position)
    return ordered[index].user_id


# ── Cycle arithmetic ──


class TestResolveRotation:
    """Tests for resolve_rotation."""

    def test_weekly_rotation_second_cycle(self):
        """Weekly, two participants: eight days in is the second turn."""
        rotation = make_rotation()
        at = datetime(2024, 1, 1, tzinfo=UTC) + timedelta(days=8)

        slot = resolve_rotation(rotation, at, UTC)

        assert slot is not None
        assert slot.participant_index == 1
        assert slot.user_id == user_at(rotation, 1)
        assert slot.start == datetime(2024, 1, 8, tzinfo=UTC)
        assert slot.end == datetime(2024, 1, 15, tzinfo=UTC)

    def test_start_instant_is_first_participant(self):
        rotation = make_rotation()

        slot = resolve_rotation(rotation, datetime(2024, 1, 1, tzinfo=UTC), UTC)

        assert slot.participant_index == 0

    def test_before_start_resolves_to_nobody(self):
        rotation = make_rotation()

        slot = resolve_rotation(
            rotation, datetime(2023, 12, 31, 23, 59, tzinfo=UTC), UTC
        )

        assert slot is None

    def test_zero_participants_resolves_to_nobody(self):
        rotation = make_rotation(participants=0)

        slot = resolve_rotation(rotation, datetime(2024, 2, 1, tzinfo=UTC), UTC)

        assert slot is None

    def test_participants_ordered_by_position_not_insertion(self):
        rotation = make_rotation(rotation_type=RotationType.DAILY)
        first, second = rotation.participants
        first.position, second.position = 1, 0

        slot = resolve_rotation(rotation, datetime(2024, 1, 1, 12, tzinfo=UTC), UTC)

        assert slot.user_id == second.user_id

    def test_custom_rotation_counts_whole_days(self):
        rotation = make_rotation(
            rotation_type=RotationType.CUSTOM, rotation_length=3, participants=4
        )

        slot = resolve_rotation(rotation, datetime(2024, 1, 8, 1, tzinfo=UTC), UTC)

        # Day 7 falls in the third three-day turn
        assert slot.participant_index == 2
        assert slot.start == datetime(2024, 1, 7, tzinfo=UTC)
        assert slot.end == datetime(2024, 1, 10, tzinfo=UTC)

    def test_index_wraps_around_participants(self):
        rotation = make_rotation(rotation_type=RotationType.DAILY, participants=3)

        slot = resolve_rotation(rotation, datetime(2024, 1, 4, 6, tzinfo=UTC), UTC)

        assert slot.participant_index == 0

    @pytest.mark.parametrize("turns", [1, 2, 5, 13])
    def test_periodic_over_a_full_rotation(self, turns):
        """A shift of rotation_length x participants lands on the same index."""
        rotation = make_rotation(
            rotation_type=RotationType.DAILY, rotation_length=2, participants=3
        )
        at = datetime(2024, 1, 2, 17, 30, tzinfo=UTC)
        full_rotation = timedelta(days=2 * 3)

        base = resolve_rotation(rotation, at, UTC)
        shifted = resolve_rotation(rotation, at + turns * full_rotation, UTC)

        assert shifted.participant_index == base.participant_index
        assert shifted.start - base.start == turns * full_rotation

    def test_malformed_rotation_resolves_to_nobody(self):
        rotation = make_rotation(rotation_length=0)

        assert resolve_rotation(rotation, datetime(2024, 2, 1, tzinfo=UTC), UTC) is None


# ── Hand-off ──


class TestHandoff:
    """Tests for hand-off day and time shifting cycle boundaries."""

    def test_weekly_handoff_moves_boundary(self):
        # handoff_day 3 = Wednesday; first hand-off is Wed Jan 3 09:00
        rotation = make_rotation(handoff_day=3, handoff_time=time(9, 0))

        before = resolve_rotation(
            rotation, datetime(2024, 1, 10, 8, 59, tzinfo=UTC), UTC
        )
        after = resolve_rotation(rotation, datetime(2024, 1, 10, 9, 0, tzinfo=UTC), UTC)

        assert before.participant_index == 0
        assert before.start == datetime(2024, 1, 1, tzinfo=UTC)
        assert after.participant_index == 1
        assert after.start == datetime(2024, 1, 10, 9, 0, tzinfo=UTC)
        assert after.end == datetime(2024, 1, 17, 9, 0, tzinfo=UTC)

    def test_daily_handoff_time(self):
        rotation = make_rotation(
            rotation_type=RotationType.DAILY, handoff_time=time(9, 0)
        )

        slot = resolve_rotation(rotation, datetime(2024, 1, 2, 10, tzinfo=UTC), UTC)

        assert slot.participant_index == 1
        assert slot.start == datetime(2024, 1, 2, 9, 0, tzinfo=UTC)

    def test_handoff_follows_local_time_across_dst(self):
        """Hand-off stays at 09:00 Berlin time after the spring-forward change."""
        berlin = ZoneInfo("Europe/Berlin")
        rotation = make_rotation(
            rotation_type=RotationType.DAILY,
            start_date=date(2024, 3, 30),
            start_time=time(9, 0),
        )

        # 09:30 CEST on 2024-03-31 is 07:30 UTC
        slot = resolve_rotation(
            rotation, datetime(2024, 3, 31, 7, 30, tzinfo=UTC), berlin
        )
        earlier = resolve_rotation(
            rotation, datetime(2024, 3, 31, 6, 30, tzinfo=UTC), berlin
        )

        assert slot.participant_index == 1
        assert slot.start == datetime(2024, 3, 31, 7, 0, tzinfo=UTC)
        assert earlier.participant_index == 0
        assert earlier.end == datetime(2024, 3, 31, 7, 0, tzinfo=UTC)


# ── Daily coverage window ──


class TestCoverageWindow:
    """Tests for rotations restricted to part of each day."""

    def test_inside_window_is_covered(self):
        rotation = make_rotation(
            rotation_type=RotationType.DAILY,
            start_time=time(9, 0),
            end_time=time(17, 0),
        )

        slot = resolve_rotation(rotation, datetime(2024, 1, 2, 12, tzinfo=UTC), UTC)

        assert slot.participant_index == 1
        assert slot.start == datetime(2024, 1, 2, 9, 0, tzinfo=UTC)
        assert slot.end == datetime(2024, 1, 2, 17, 0, tzinfo=UTC)

    def test_window_end_is_exclusive(self):
        rotation = make_rotation(
            rotation_type=RotationType.DAILY,
            start_time=time(9, 0),
            end_time=time(17, 0),
        )

        assert (
            resolve_rotation(rotation, datetime(2024, 1, 2, 17, 0, tzinfo=UTC), UTC)
            is None
        )

    def test_overnight_window(self):
        rotation = make_rotation(
            rotation_type=RotationType.DAILY,
            start_time=time(22, 0),
            end_time=time(6, 0),
        )

        slot = resolve_rotation(rotation, datetime(2024, 1, 2, 3, tzinfo=UTC), UTC)
        outside = resolve_rotation(rotation, datetime(2024, 1, 2, 7, tzinfo=UTC), UTC)

        assert slot.participant_index == 0
        assert slot.start == datetime(2024, 1, 1, 22, 0, tzinfo=UTC)
        assert slot.end == datetime(2024, 1, 2, 6, 0, tzinfo=UTC)
        assert outside is None


class TestNextRotationChange:
    """Tests for next_rotation_change."""

    def test_covered_instant_changes_at_slot_end(self):
        rotation = make_rotation()

        change = next_rotation_change(rotation, datetime(2024, 1, 3, tzinfo=UTC), UTC)

        assert change == datetime(2024, 1, 8, tzinfo=UTC)

    def test_before_start_changes_at_start(self):
        rotation = make_rotation(start_time=time(8, 0))

        change = next_rotation_change(rotation, datetime(2023, 12, 30, tzinfo=UTC), UTC)

        assert change == datetime(2024, 1, 1, 8, 0, tzinfo=UTC)

    def test_outside_window_changes_at_next_window(self):
        rotation = make_rotation(
            rotation_type=RotationType.DAILY,
            start_time=time(9, 0),
            end_time=time(17, 0),
        )

        change = next_rotation_change(
            rotation, datetime(2024, 1, 2, 18, tzinfo=UTC), UTC
        )

        assert change == datetime(2024, 1, 3, 9, 0, tzinfo=UTC)

    def test_empty_rotation_never_changes(self):
        rotation = make_rotation(participants=0)

        assert (
            next_rotation_change(rotation, datetime(2024, 1, 3, tzinfo=UTC), UTC)
            is None
        )


# ── Validation ──


class TestValidateRotationConfig:
    """Tests for validate_rotation_config."""

    def test_valid_weekly_with_handoff_day(self):
        assert (
            validate_rotation_config("weekly", 2, handoff_day=1)
            is RotationType.WEEKLY
        )

    def test_unknown_type_rejected(self):
        with pytest.raises(RotationConfigError, match="Unknown rotation type"):
            validate_rotation_config("hourly", 1)

    @pytest.mark.parametrize("length", [0, -3])
    def test_non_positive_length_rejected(self, length):
        with pytest.raises(RotationConfigError, match="at least 1"):
            validate_rotation_config(RotationType.DAILY, length)

    def test_handoff_day_on_daily_rejected(self):
        with pytest.raises(RotationConfigError, match="only valid for weekly"):
            validate_rotation_config(RotationType.DAILY, 1, handoff_day=2)

    def test_handoff_day_out_of_range_rejected(self):
        with pytest.raises(RotationConfigError, match="between 0"):
            validate_rotation_config(RotationType.WEEKLY, 1, handoff_day=7)
