"""Tests for the slot engine.

The engine is a pure function, so these tests build windows and bookings
directly and check the free slots that come back. No FHIR server or
mocking is involved.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from fhir_mcp.slots import (
    AvailabilityWindow,
    BookedInterval,
    InvalidDuration,
    MalformedTimestamp,
    booked_from_appointments,
    compute_free_slots,
    parse_duration,
    parse_timestamp,
    restrict_windows,
    windows_from_schedules,
)

# --- Test helpers ---


def _t(hhmm: str, day: int = 1) -> datetime:
    """Build a UTC timestamp on 2024-01-<day> at HH:MM."""
    hours, minutes = hhmm.split(":")
    return datetime(2024, 1, day, int(hours), int(minutes), tzinfo=timezone.utc)


def _window(start: str, end: str, day: int = 1) -> AvailabilityWindow:
    return AvailabilityWindow(start=_t(start, day), end=_t(end, day))


def _booking(start: str, end: str, day: int = 1) -> BookedInterval:
    return BookedInterval(start=_t(start, day), end=_t(end, day))


def _spans(slots: list) -> list[tuple[datetime, datetime]]:
    return [(s.start, s.end) for s in slots]


# --- Tiling ---


class TestTiling:
    """Windows are cut into consecutive fixed-length slots."""

    @pytest.mark.parametrize("duration,count", [(15, 8), (30, 4), (60, 2), (120, 1)])
    def test_window_tiles_exactly(self, duration: int, count: int) -> None:
        """A window k*d long gives k contiguous slots with no gaps or overlaps."""
        slots = compute_free_slots([_window("09:00", "11:00")], [], duration)

        assert len(slots) == count
        assert slots[0].start == _t("09:00")
        assert slots[-1].end == _t("11:00")
        for prev, nxt in zip(slots, slots[1:]):
            assert prev.end == nxt.start
        assert all(s.end - s.start == timedelta(minutes=duration) for s in slots)

    def test_trailing_partial_slot_is_discarded(self) -> None:
        """A slot that would run past the window end is not emitted."""
        slots = compute_free_slots([_window("09:00", "10:15")], [], 30)

        assert _spans(slots) == [
            (_t("09:00"), _t("09:30")),
            (_t("09:30"), _t("10:00")),
        ]

    def test_window_shorter_than_duration_gives_nothing(self) -> None:
        assert compute_free_slots([_window("09:00", "09:20")], [], 30) == []

    def test_no_windows_gives_nothing(self) -> None:
        assert compute_free_slots([], [_booking("09:00", "10:00")], 30) == []

    def test_disjoint_windows_tile_independently(self) -> None:
        """Slot count is the sum of each window's tile count, in input order."""
        windows = [_window("13:00", "14:00"), _window("09:00", "10:30")]
        slots = compute_free_slots(windows, [], 30)

        assert len(slots) == 2 + 3
        assert slots[0].start == _t("13:00")
        assert slots[2].start == _t("09:00")

    def test_overlapping_windows_are_not_merged(self) -> None:
        windows = [_window("09:00", "10:00"), _window("09:30", "10:30")]
        slots = compute_free_slots(windows, [], 30)

        assert _spans(slots) == [
            (_t("09:00"), _t("09:30")),
            (_t("09:30"), _t("10:00")),
            (_t("09:30"), _t("10:00")),
            (_t("10:00"), _t("10:30")),
        ]

    def test_window_spanning_midnight(self) -> None:
        window = AvailabilityWindow(start=_t("23:00"), end=_t("01:00", day=2))
        slots = compute_free_slots([window], [], 60)

        assert _spans(slots) == [
            (_t("23:00"), _t("00:00", day=2)),
            (_t("00:00", day=2), _t("01:00", day=2)),
        ]


# --- Booking exclusion ---


class TestBookings:
    """Slots touched by a booking are dropped."""

    def test_example_booking_in_second_half(self) -> None:
        """[09:00, 10:00) by 30 min with [09:30, 10:00) booked leaves 09:00-09:30."""
        slots = compute_free_slots(
            [_window("09:00", "10:00")], [_booking("09:30", "10:00")], 30
        )

        assert _spans(slots) == [(_t("09:00"), _t("09:30"))]

    def test_booking_covering_one_slot_excludes_only_that_slot(self) -> None:
        slots = compute_free_slots(
            [_window("09:00", "11:00")], [_booking("09:30", "10:00")], 30
        )

        assert [s.start for s in slots] == [_t("09:00"), _t("10:00"), _t("10:30")]

    def test_bookings_outside_all_slots_change_nothing(self) -> None:
        booked = [_booking("07:00", "08:00"), _booking("12:00", "13:00"), _booking("09:00", "10:00", day=2)]
        slots = compute_free_slots([_window("09:00", "11:00")], booked, 30)

        assert len(slots) == 4

    def test_touching_boundaries_do_not_block(self) -> None:
        """Half-open intervals: a booking ending at 09:30 leaves 09:30-10:00 free."""
        booked = [_booking("08:30", "09:30"), _booking("10:00", "10:30")]
        slots = compute_free_slots([_window("09:30", "10:00")], booked, 30)

        assert _spans(slots) == [(_t("09:30"), _t("10:00"))]

    def test_booking_starting_inside_slot(self) -> None:
        slots = compute_free_slots(
            [_window("09:00", "10:00")], [_booking("09:10", "09:20")], 30
        )

        assert _spans(slots) == [(_t("09:30"), _t("10:00"))]

    def test_booking_ending_inside_slot(self) -> None:
        slots = compute_free_slots(
            [_window("09:00", "10:00")], [_booking("08:45", "09:40")], 30
        )

        assert slots == []

    def test_booking_containing_whole_window(self) -> None:
        slots = compute_free_slots(
            [_window("09:00", "10:00")], [_booking("08:00", "12:00")], 15
        )

        assert slots == []

    def test_overlapping_bookings_on_same_slot(self) -> None:
        booked = [_booking("09:00", "09:30"), _booking("09:10", "09:20")]
        slots = compute_free_slots([_window("09:00", "10:00")], booked, 30)

        assert _spans(slots) == [(_t("09:30"), _t("10:00"))]

    def test_offsets_are_compared_in_utc(self) -> None:
        """A booking written in another offset still blocks the same instant."""
        window = AvailabilityWindow(
            start=parse_timestamp("2024-01-01T09:00:00Z"),
            end=parse_timestamp("2024-01-01T10:00:00Z"),
        )
        booking = BookedInterval(
            start=parse_timestamp("2024-01-01T11:00:00+02:00"),
            end=parse_timestamp("2024-01-01T11:30:00+02:00"),
        )

        slots = compute_free_slots([window], [booking], 30)

        assert _spans(slots) == [(_t("09:30"), _t("10:00"))]


# --- Identity and results ---


class TestSlotIdentity:
    def test_ids_are_derived_from_boundaries(self) -> None:
        slots = compute_free_slots([_window("09:00", "09:30")], [], 30)

        assert slots[0].id == "2024-01-01T09:00:00Z-2024-01-01T09:30:00Z"

    def test_repeated_calls_give_identical_output(self) -> None:
        windows = [_window("09:00", "12:00"), _window("14:00", "15:00")]
        booked = [_booking("10:00", "10:45")]

        first = compute_free_slots(windows, booked, 30)
        second = compute_free_slots(windows, booked, 30)

        assert [s.to_dict() for s in first] == [s.to_dict() for s in second]

    def test_to_dict(self) -> None:
        slot = compute_free_slots([_window("09:00", "09:30")], [], 30)[0]

        assert slot.to_dict() == {
            "id": "2024-01-01T09:00:00Z-2024-01-01T09:30:00Z",
            "start": "2024-01-01T09:00:00Z",
            "end": "2024-01-01T09:30:00Z",
        }


# --- Clipping to a search range ---


class TestRestrictWindows:
    """Clipping a window to a range keeps the window's own slot boundaries."""

    def test_range_covering_window_changes_nothing(self) -> None:
        windows = [_window("09:00", "12:00")]

        assert restrict_windows(windows, _t("00:00"), _t("00:00", day=2), 30) == windows

    def test_start_moves_to_next_slot_boundary(self) -> None:
        clipped = restrict_windows([_window("09:00", "12:00")], _t("09:40"), _t("12:00"), 30)

        assert clipped == [_window("10:00", "12:00")]

    def test_start_on_boundary_is_kept(self) -> None:
        clipped = restrict_windows([_window("09:00", "12:00")], _t("10:30"), _t("12:00"), 30)

        assert clipped == [_window("10:30", "12:00")]

    def test_end_is_clipped(self) -> None:
        clipped = restrict_windows([_window("09:00", "12:00")], _t("00:00"), _t("10:45"), 30)

        assert clipped == [_window("09:00", "10:45")]

    def test_windows_outside_range_are_dropped(self) -> None:
        windows = [_window("09:00", "10:00"), _window("09:00", "10:00", day=3)]

        clipped = restrict_windows(windows, _t("00:00", day=2), _t("00:00", day=4), 60)

        assert clipped == [_window("09:00", "10:00", day=3)]

    def test_range_between_boundaries_leaves_nothing(self) -> None:
        assert restrict_windows([_window("09:00", "12:00")], _t("09:10"), _t("09:50"), 30) == []

    def test_tiling_matches_full_window_inside_range(self) -> None:
        window = AvailabilityWindow(start=_t("09:00"), end=_t("09:00", day=3))
        range_start, range_end = _t("13:20", day=2), _t("02:00", day=3)

        clipped = restrict_windows([window], range_start, range_end, 45)

        expected = [
            s
            for s in compute_free_slots([window], [], 45)
            if s.start >= range_start and s.end <= range_end
        ]
        assert compute_free_slots(clipped, [], 45) == expected
        assert expected

    def test_invalid_duration(self) -> None:
        with pytest.raises(InvalidDuration):
            restrict_windows([_window("09:00", "10:00")], _t("00:00"), _t("12:00"), 0)


# --- Input validation ---


class TestDuration:
    @pytest.mark.parametrize("value,expected", [(30, 30), ("45", 45), (" 15 ", 15), (60.0, 60)])
    def test_valid(self, value: object, expected: int) -> None:
        assert parse_duration(value) == expected

    @pytest.mark.parametrize("value", [0, -15, "0", "abc", "", "30.5", 12.5, None, True, [30]])
    def test_invalid(self, value: object) -> None:
        with pytest.raises(InvalidDuration):
            parse_duration(value)

    def test_invalid_duration_aborts_computation(self) -> None:
        with pytest.raises(InvalidDuration, match="positive whole number"):
            compute_free_slots([_window("09:00", "10:00")], [], "thirty")


class TestTimestamps:
    def test_z_suffix(self) -> None:
        assert parse_timestamp("2024-01-01T09:00:00Z") == _t("09:00")

    def test_naive_is_utc(self) -> None:
        assert parse_timestamp("2024-01-01T09:00:00") == _t("09:00")

    def test_date_only_is_midnight(self) -> None:
        assert parse_timestamp("2024-01-01") == _t("00:00")

    def test_offset_converted_to_utc(self) -> None:
        assert parse_timestamp("2024-01-01T04:00:00-05:00") == _t("09:00")

    def test_year_only(self) -> None:
        assert parse_timestamp("2024") == datetime(2024, 1, 1, tzinfo=timezone.utc)

    def test_year_month(self) -> None:
        assert parse_timestamp("2024-03") == datetime(2024, 3, 1, tzinfo=timezone.utc)

    @pytest.mark.parametrize("value", ["not a date", "2024-13-01", "2024-13", "24", "", None, 20240101])
    def test_malformed(self, value: object) -> None:
        with pytest.raises(MalformedTimestamp):
            parse_timestamp(value)


# --- Extraction from bundles ---


class TestBundleExtraction:
    def test_windows_from_schedules(self) -> None:
        bundle = {
            "resourceType": "Bundle",
            "entry": [
                {
                    "resource": {
                        "resourceType": "Schedule",
                        "id": "s1",
                        "planningHorizon": {
                            "start": "2024-01-01T09:00:00Z",
                            "end": "2024-01-01T12:00:00Z",
                        },
                    }
                },
                {"resource": {"resourceType": "Schedule", "id": "s2"}},
                {
                    "resource": {
                        "resourceType": "Schedule",
                        "id": "s3",
                        "planningHorizon": {"start": "2024-01-02T09:00:00Z"},
                    }
                },
            ],
        }

        assert windows_from_schedules(bundle) == [_window("09:00", "12:00")]

    def test_empty_bundle(self) -> None:
        assert windows_from_schedules({"resourceType": "Bundle", "total": 0}) == []
        assert booked_from_appointments({"resourceType": "Bundle", "total": 0}) == []

    def test_malformed_planning_horizon_raises(self) -> None:
        bundle = {
            "entry": [
                {"resource": {"planningHorizon": {"start": "yesterday", "end": "2024-01-01"}}}
            ]
        }

        with pytest.raises(MalformedTimestamp, match="planningHorizon.start"):
            windows_from_schedules(bundle)

    def test_booked_from_appointments_skips_inactive(self) -> None:
        bundle = {
            "entry": [
                {
                    "resource": {
                        "status": "booked",
                        "start": "2024-01-01T09:00:00Z",
                        "end": "2024-01-01T09:30:00Z",
                    }
                },
                {
                    "resource": {
                        "status": "cancelled",
                        "start": "2024-01-01T10:00:00Z",
                        "end": "2024-01-01T10:30:00Z",
                    }
                },
                {"resource": {"status": "proposed"}},
            ]
        }

        assert booked_from_appointments(bundle) == [_booking("09:00", "09:30")]

    def test_malformed_appointment_time_raises(self) -> None:
        bundle = {"entry": [{"resource": {"start": "2024-01-01T09:00:00Z", "end": "soon"}}]}

        with pytest.raises(MalformedTimestamp, match="Appointment.end"):
            booked_from_appointments(bundle)
