"""Scheduling tools — open slots and booking appointments.

FHIR endpoints used:
- GET  /Schedule     — Practitioner's planning horizons
- GET  /Appointment  — Practitioner's existing appointments
- POST /Appointment  — Book a new appointment
"""

from __future__ import annotations

import asyncio
import json
import logging
from datetime import datetime
from typing import Any

from mcp.server.fastmcp.exceptions import ToolError
from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    ValidationError,
    ValidationInfo,
    field_validator,
    model_validator,
)

from fhir_mcp.fhir_client import FHIRAPIError, get_client
from fhir_mcp.slots import (
    SlotEngineError,
    booked_from_appointments,
    compute_free_slots,
    format_timestamp,
    parse_duration,
    parse_timestamp,
    restrict_windows,
    windows_from_schedules,
)

logger = logging.getLogger(__name__)

APPOINTMENT_TYPE_SYSTEM = "http://terminology.hl7.org/CodeSystem/appointment-type"


# --- Request models ---
# Validators call the slot engine's parsers, so a bad duration or date
# surfaces as InvalidDuration / MalformedTimestamp rather than a generic
# pydantic error.


class FindAvailableSlotsRequest(BaseModel):
    """Validated arguments of find_available_slots."""

    model_config = ConfigDict(str_strip_whitespace=True)

    practitioner_id: str = Field(..., min_length=1)
    duration: int
    start_date: datetime
    end_date: datetime
    appointment_type: str | None = None

    @field_validator("duration", mode="before")
    @classmethod
    def _check_duration(cls, value: Any) -> int:
        return parse_duration(value)

    @field_validator("start_date", "end_date", mode="before")
    @classmethod
    def _check_date(cls, value: Any, info: ValidationInfo) -> datetime:
        return parse_timestamp(value, info.field_name)

    @model_validator(mode="after")
    def _check_range(self) -> FindAvailableSlotsRequest:
        if self.end_date <= self.start_date:
            raise ValueError("end_date must be after start_date")
        return self

    def search_params(self, practitioner_param: str, practitioner_value: str) -> list[tuple[str, str]]:
        """Build FHIR search parameters restricted to the requested date range."""
        return [
            (practitioner_param, practitioner_value),
            ("date", f"ge{format_timestamp(self.start_date)}"),
            ("date", f"le{format_timestamp(self.end_date)}"),
        ]


class ScheduleAppointmentRequest(BaseModel):
    """Validated arguments of schedule_appointment."""

    model_config = ConfigDict(str_strip_whitespace=True)

    patient_id: str = Field(..., min_length=1)
    practitioner_id: str = Field(..., min_length=1)
    appointment_type: str = Field(..., min_length=1)
    start_time: datetime
    end_time: datetime
    notes: str | None = None

    @field_validator("start_time", "end_time", mode="before")
    @classmethod
    def _check_time(cls, value: Any, info: ValidationInfo) -> datetime:
        return parse_timestamp(value, info.field_name)

    @model_validator(mode="after")
    def _check_order(self) -> ScheduleAppointmentRequest:
        if self.end_time <= self.start_time:
            raise ValueError("end_time must be after start_time")
        return self

    def to_resource(self) -> dict[str, Any]:
        """Build the FHIR Appointment resource to create."""
        resource: dict[str, Any] = {
            "resourceType": "Appointment",
            "status": "booked",
            "appointmentType": {
                "coding": [{"system": APPOINTMENT_TYPE_SYSTEM, "code": self.appointment_type}]
            },
            "start": format_timestamp(self.start_time),
            "end": format_timestamp(self.end_time),
            "participant": [
                {"actor": {"reference": f"Patient/{self.patient_id}"}, "status": "accepted"},
                {
                    "actor": {"reference": f"Practitioner/{self.practitioner_id}"},
                    "status": "accepted",
                },
            ],
        }
        if self.notes:
            resource["comment"] = self.notes
        return resource


# --- Tools ---


async def find_available_slots(
    practitioner_id: str,
    duration: int | str,
    start_date: str,
    end_date: str,
    appointment_type: str | None = None,
) -> str:
    """Find open appointment slots for a practitioner.

    Looks up the practitioner's schedules and existing appointments in the
    date range, cuts the part of each schedule's planning horizon that lies
    in the range into slots of the requested length, and drops every slot
    an appointment overlaps.

    Args:
        practitioner_id: FHIR Practitioner resource ID.
        duration: Slot length in minutes (positive whole number).
        start_date: Start of the search range (ISO-8601).
        end_date: End of the search range (ISO-8601).
        appointment_type: Type of appointment (e.g., followup, initial).

    Returns:
        JSON object {"availableSlots": [{"id", "start", "end"}, ...]}.
    """
    try:
        request = FindAvailableSlotsRequest(
            practitioner_id=practitioner_id,
            duration=duration,
            start_date=start_date,
            end_date=end_date,
            appointment_type=appointment_type,
        )
    except (SlotEngineError, ValidationError) as e:
        raise ToolError(f"Failed to find available slots: {e}") from e

    client = await get_client()

    # If one search fails the TaskGroup cancels the other.
    try:
        async with asyncio.TaskGroup() as tg:
            schedules_task = tg.create_task(
                client.get(
                    "/Schedule",
                    params=request.search_params("actor", f"Practitioner/{request.practitioner_id}"),
                )
            )
            appointments_task = tg.create_task(
                client.get(
                    "/Appointment",
                    params=request.search_params("practitioner", request.practitioner_id),
                )
            )
    except ExceptionGroup as eg:
        api_error = next((e for e in eg.exceptions if isinstance(e, FHIRAPIError)), None)
        if api_error is None:
            raise
        raise ToolError(f"Failed to find available slots: {api_error.detail}") from api_error

    # Bookings were only fetched for the requested range, so only slots
    # inside that range can be checked against them.
    try:
        windows = restrict_windows(
            windows_from_schedules(schedules_task.result()),
            request.start_date,
            request.end_date,
            request.duration,
        )
        free = compute_free_slots(
            windows,
            booked_from_appointments(appointments_task.result()),
            request.duration,
        )
    except SlotEngineError as e:
        raise ToolError(f"Failed to find available slots: {e}") from e

    logger.info(
        "Found %d free %d-minute slots for Practitioner/%s",
        len(free),
        request.duration,
        request.practitioner_id,
    )
    return json.dumps({"availableSlots": [slot.to_dict() for slot in free]}, indent=2)


async def schedule_appointment(
    patient_id: str,
    practitioner_id: str,
    appointment_type: str,
    start_time: str,
    end_time: str,
    notes: str | None = None,
) -> str:
    """Schedule a new appointment.

    Args:
        patient_id: FHIR Patient resource ID.
        practitioner_id: FHIR Practitioner resource ID.
        appointment_type: Type of appointment (e.g., FOLLOWUP, ROUTINE).
        start_time: Start time of the appointment (ISO-8601).
        end_time: End time of the appointment (ISO-8601).
        notes: Notes about the appointment.

    Returns:
        The created FHIR Appointment resource as JSON.
    """
    try:
        request = ScheduleAppointmentRequest(
            patient_id=patient_id,
            practitioner_id=practitioner_id,
            appointment_type=appointment_type,
            start_time=start_time,
            end_time=end_time,
            notes=notes,
        )
    except (SlotEngineError, ValidationError) as e:
        raise ToolError(f"Failed to schedule appointment: {e}") from e

    client = await get_client()

    try:
        data = await client.post("/Appointment", json_data=request.to_resource())
    except FHIRAPIError as e:
        raise ToolError(f"Failed to schedule appointment: {e.detail}") from e

    logger.info("Booked appointment %s", data.get("id", "?"))
    return json.dumps(data, indent=2)
