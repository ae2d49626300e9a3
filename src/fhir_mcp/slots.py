"""Availability slot computation.

Given a practitioner's availability windows (from FHIR Schedule resources)
and their existing bookings (from FHIR Appointment resources), this module
works out which fixed-length appointment slots are still open.

Concept — Slot tiling:
    Each availability window is cut into consecutive slots of exactly the
    requested duration, starting at the window's start. A slot that would
    run past the end of its window is dropped, so every slot returned has
    the same length. Windows are tiled independently: two overlapping
    windows can produce overlapping slots.

Concept — Half-open intervals:
    A slot [09:00, 09:30) and a booking [09:30, 10:00) touch but do not
    overlap. A slot is busy when a booking starts inside it, ends inside
    it, or covers it completely.

Everything here is synchronous and pure: no I/O, no shared state. The
tool layer fetches the FHIR bundles and hands the parsed data over.

Usage:
    windows = windows_from_schedules(schedule_bundle)
    booked = booked_from_appointments(appointment_bundle)
    windows = restrict_windows(windows, range_start, range_end, 30)
    free = compute_free_slots(windows, booked, 30)
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone
from enum import Enum
from typing import Any

logger = logging.getLogger(__name__)

# Appointment statuses that do not occupy the practitioner's time.
INACTIVE_APPOINTMENT_STATUSES = frozenset({"cancelled", "entered-in-error", "noshow"})

# FHIR dateTime allows reduced precision: "2024" or "2024-01".
_YEAR = re.compile(r"^\d{4}$")
_YEAR_MONTH = re.compile(r"^\d{4}-\d{2}$")


class SlotEngineError(Exception):
    """Base class for errors that abort a slot computation."""


class InvalidDuration(SlotEngineError):
    """Raised when the slot duration is not a positive whole number of minutes."""

    def __init__(self, value: Any) -> None:
        self.value = value
        super().__init__(
            f"Duration must be a positive whole number of minutes, got {value!r}"
        )


class MalformedTimestamp(SlotEngineError):
    """Raised when a timestamp is not valid ISO-8601."""

    def __init__(self, value: Any, field: str = "timestamp") -> None:
        self.value = value
        self.field = field
        super().__init__(f"Malformed {field}: {value!r} is not an ISO-8601 timestamp")


class SlotStatus(str, Enum):
    FREE = "free"
    BUSY = "busy"


@dataclass(frozen=True)
class AvailabilityWindow:
    """A period during which a practitioner can be booked."""

    start: datetime
    end: datetime


@dataclass(frozen=True)
class BookedInterval:
    """An existing commitment that removes availability."""

    start: datetime
    end: datetime


@dataclass
class Slot:
    """A candidate appointment of exactly the requested duration."""

    id: str
    start: datetime
    end: datetime
    status: SlotStatus = SlotStatus.FREE

    def to_dict(self) -> dict[str, str]:
        """Serialize for a tool result."""
        return {
            "id": self.id,
            "start": format_timestamp(self.start),
            "end": format_timestamp(self.end),
        }


# --- Parsing helpers ---


def parse_duration(value: Any) -> int:
    """Parse a slot duration in minutes.

    Accepts ints and strings of digits ("30", " 45 "). Anything else,
    including zero, negatives, booleans and fractional values, is rejected.

    Raises:
        InvalidDuration: If the value is not a positive whole number.
    """
    if isinstance(value, bool):
        raise InvalidDuration(value)
    if isinstance(value, int):
        minutes = value
    elif isinstance(value, float) and value.is_integer():
        minutes = int(value)
    elif isinstance(value, str) and value.strip().isascii() and value.strip().isdigit():
        minutes = int(value.strip())
    else:
        raise InvalidDuration(value)

    if minutes <= 0:
        raise InvalidDuration(value)
    return minutes


def parse_timestamp(value: Any, field: str = "timestamp") -> datetime:
    """Parse an ISO-8601 date or date-time into an aware UTC datetime.

    A trailing "Z" is accepted. Values without a UTC offset, and plain
    dates ("2024-01-01"), are taken to be UTC so every parsed value can be
    compared with every other. A year ("2024") or year-month ("2024-01")
    stands for the first instant of that period.

    Raises:
        MalformedTimestamp: If the value is not a string or not ISO-8601.
    """
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str) and value.strip():
        text = value.strip()
        if text.endswith(("Z", "z")):
            text = text[:-1] + "+00:00"
        elif _YEAR.match(text):
            text += "-01-01"
        elif _YEAR_MONTH.match(text):
            text += "-01"
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError as exc:
            raise MalformedTimestamp(value, field) from exc
    elif isinstance(value, date):
        parsed = datetime(value.year, value.month, value.day)
    else:
        raise MalformedTimestamp(value, field)

    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def format_timestamp(value: datetime) -> str:
    """Format a datetime as an ISO-8601 UTC string with a "Z" suffix."""
    text = value.astimezone(timezone.utc).isoformat()
    return text.replace("+00:00", "Z")


def slot_id(start: datetime, end: datetime) -> str:
    """Build a stable slot identifier from its boundaries."""
    return f"{format_timestamp(start)}-{format_timestamp(end)}"


# --- Extraction from FHIR bundles ---


def _bundle_resources(bundle: dict[str, Any] | None) -> list[dict[str, Any]]:
    """Return the resources contained in a FHIR search Bundle."""
    if not bundle:
        return []
    return [
        entry["resource"]
        for entry in bundle.get("entry") or []
        if isinstance(entry, dict) and isinstance(entry.get("resource"), dict)
    ]


def windows_from_schedules(bundle: dict[str, Any] | None) -> list[AvailabilityWindow]:
    """Extract availability windows from a Bundle of Schedule resources.

    Each Schedule contributes its planningHorizon. Schedules without a
    complete planningHorizon (start and end) are skipped.

    Raises:
        MalformedTimestamp: If a planningHorizon boundary is not ISO-8601.
    """
    windows: list[AvailabilityWindow] = []
    for schedule in _bundle_resources(bundle):
        horizon = schedule.get("planningHorizon") or {}
        start, end = horizon.get("start"), horizon.get("end")
        if not start or not end:
            logger.debug(
                "Skipping Schedule %s without a planning horizon",
                schedule.get("id", "?"),
            )
            continue
        windows.append(
            AvailabilityWindow(
                start=parse_timestamp(start, "planningHorizon.start"),
                end=parse_timestamp(end, "planningHorizon.end"),
            )
        )
    return windows


def booked_from_appointments(bundle: dict[str, Any] | None) -> list[BookedInterval]:
    """Extract booked intervals from a Bundle of Appointment resources.

    Cancelled, entered-in-error and no-show appointments don't hold the
    practitioner's time and are skipped, as are appointments without both
    a start and an end (e.g. proposed ones).

    Raises:
        MalformedTimestamp: If an appointment start or end is not ISO-8601.
    """
    booked: list[BookedInterval] = []
    for appointment in _bundle_resources(bundle):
        if appointment.get("status") in INACTIVE_APPOINTMENT_STATUSES:
            continue
        start, end = appointment.get("start"), appointment.get("end")
        if not start or not end:
            continue
        booked.append(
            BookedInterval(
                start=parse_timestamp(start, "Appointment.start"),
                end=parse_timestamp(end, "Appointment.end"),
            )
        )
    return booked


# --- Slot engine ---


def overlaps(slot: Slot, booking: BookedInterval) -> bool:
    """Check whether a booking takes up any part of a slot.

    True when the booking starts inside the slot, ends inside the slot,
    or covers the whole slot. Touching boundaries do not count.
    """
    return (
        (slot.start <= booking.start < slot.end)
        or (slot.start < booking.end <= slot.end)
        or (booking.start <= slot.start and booking.end >= slot.end)
    )


def restrict_windows(
    windows: list[AvailabilityWindow],
    range_start: datetime,
    range_end: datetime,
    duration_minutes: Any,
) -> list[AvailabilityWindow]:
    """Clip windows to [range_start, range_end] without moving their slot grid.

    A clipped window starts at the first slot boundary of the original
    window that falls inside the range, so tiling the clipped window gives
    exactly the slots of the full window that lie within the range.
    Windows entirely outside the range are dropped.

    Raises:
        InvalidDuration: If duration_minutes is not a positive whole number.
    """
    step = timedelta(minutes=parse_duration(duration_minutes))
    clipped: list[AvailabilityWindow] = []
    for window in windows:
        start = window.start
        if range_start > start:
            steps = -((start - range_start) // step)  # ceiling division
            start += steps * step
        end = min(window.end, range_end)
        if start < end:
            clipped.append(AvailabilityWindow(start=start, end=end))
    return clipped


def _tile(window: AvailabilityWindow, step: timedelta) -> list[Slot]:
    slots: list[Slot] = []
    current = window.start
    # Stop before a slot would run past the window end.
    while current + step <= window.end:
        end = current + step
        slots.append(Slot(id=slot_id(current, end), start=current, end=end))
        current = end
    return slots


def compute_free_slots(
    windows: list[AvailabilityWindow],
    booked: list[BookedInterval],
    duration_minutes: Any,
) -> list[Slot]:
    """Compute the open appointment slots for a practitioner.

    Args:
        windows: Availability windows, processed in the given order.
        booked: Existing bookings; any slot they touch is excluded.
        duration_minutes: Length of each slot. Strings of digits are accepted.

    Returns:
        Free slots, window by window, each window's slots in time order.

    Raises:
        InvalidDuration: If duration_minutes is not a positive whole number.
    """
    minutes = parse_duration(duration_minutes)
    step = timedelta(minutes=minutes)

    slots: list[Slot] = []
    for window in windows:
        slots.extend(_tile(window, step))

    for booking in booked:
        for slot in slots:
            if slot.status is SlotStatus.BUSY:
                continue
            if overlaps(slot, booking):
                slot.status = SlotStatus.BUSY

    free = [slot for slot in slots if slot.status is SlotStatus.FREE]
    logger.debug(
        "Computed %d free of %d slots (%d windows, %d bookings, %d min)",
        len(free),
        len(slots),
        len(windows),
        len(booked),
        minutes,
    )
    return free
