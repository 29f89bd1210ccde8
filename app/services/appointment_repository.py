from __future__ import annotations

import logging
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta, tzinfo
from typing import Any

from app.core.config import Settings
from app.services.appointment_store import AppointmentStore, create_appointment_store
from app.services.email_parsers import StudentNames, resolve_timezone
from app.services.text_normalizer import canon

logger = logging.getLogger(__name__)

NOT_AVAILABLE = "N/A"


class AppointmentRepositoryError(Exception):
    pass


class AppointmentNotFoundError(AppointmentRepositoryError):
    pass


class AppointmentAmbiguityError(AppointmentRepositoryError):
    pass


class InvalidAppointmentWindowError(AppointmentRepositoryError):
    pass


@dataclass(frozen=True)
class AppointmentWriteResult:
    appointment_id: str
    created: bool = False
    updated: bool = False
    deleted: bool = False
    ambiguous: bool = False
    match_phase: str | None = None


def to_iso(value: datetime) -> str:
    return value.astimezone(UTC).isoformat(timespec="seconds")


def format_display_time(value: datetime, zone: tzinfo) -> str:
    local = value.astimezone(zone)
    hour = local.hour % 12 or 12
    meridiem = "AM" if local.hour < 12 else "PM"
    return f"{hour}:{local.minute:02d} {meridiem}"


def format_display_datetime(value: datetime, zone: tzinfo) -> str:
    local = value.astimezone(zone)
    return f"{local.month}/{local.day}/{local.year}, {format_display_time(local, zone)}"


def generate_structured_notes(
    *,
    student_name: str | None,
    course_name: str | None,
    coach_name: str | None,
    start: datetime,
    end: datetime,
    display_timezone: str = "America/Los_Angeles",
) -> str:
    zone = resolve_timezone(display_timezone) or UTC
    lines = [
        f"Student: {student_name or NOT_AVAILABLE}",
        f"Lesson Type: {course_name or NOT_AVAILABLE}",
        f"Coach: {coach_name or NOT_AVAILABLE}",
        f"Start Time: {format_display_datetime(start, zone)}",
        f"End Time: {format_display_time(end, zone)}",
    ]
    return "\n".join(lines)


def collect_student_names(record: Mapping[str, Any]) -> list[str]:
    extended_props = record.get("extended_props")
    if not isinstance(extended_props, Mapping):
        extended_props = {}

    names: list[str] = []
    for candidate in (extended_props.get("student_name"), record.get("student_name")):
        if isinstance(candidate, str) and candidate.strip():
            names.append(candidate)
    raw_names = extended_props.get("student_names")
    if isinstance(raw_names, list):
        names.extend(name for name in raw_names if isinstance(name, str) and name.strip())
    return names


def build_lesson_title(student_label: str | None) -> str:
    if student_label:
        return f"Lesson – {student_label}"
    return "Lesson"


class AppointmentRepository:
    def __init__(
        self,
        settings: Settings,
        store: AppointmentStore | None = None,
    ) -> None:
        self.settings = settings
        self.store = store or create_appointment_store(settings)

    def upsert_appointment(
        self,
        *,
        coach_id: str,
        start: datetime,
        end: datetime,
        subject: str,
        text: str,
        students: StudentNames,
        coach_hint: str | None,
        lesson_type: str | None = None,
    ) -> AppointmentWriteResult:
        _validate_window(start, end)
        start_iso = to_iso(start)
        canonical_names = list(students.student_names)
        if not canonical_names and students.student_name:
            canonical_names = [students.student_name]
        student_label = students.student_name or (" & ".join(canonical_names) or None)
        now = datetime.now(UTC)

        fields: dict[str, Any] = {
            "title": build_lesson_title(student_label),
            "coach_id": coach_id,
            "start": start_iso,
            "end": to_iso(end),
            "start_ts": start.astimezone(UTC),
            "end_ts": end.astimezone(UTC),
            "extended_props.coach_id": coach_id,
            "extended_props.subject": subject,
            "extended_props.lesson_type": lesson_type,
            "extended_props.raw_text": _truncate(text, self.settings.raw_text_max_chars),
            "extended_props.notes": generate_structured_notes(
                student_name=student_label,
                course_name=lesson_type,
                coach_name=coach_hint,
                start=start,
                end=end,
                display_timezone=self.settings.display_timezone,
            ),
            "updated_at": now,
        }
        if canonical_names:
            fields["extended_props.student_names"] = canonical_names
        fields = {path: value for path, value in fields.items() if value is not None}

        existing = self.store.find_by_coach_and_start(coach_id, start_iso)
        if existing:
            appointment_id = str(existing["_id"])
            self.store.update(appointment_id, fields)
            logger.info(
                "Appointment merged appointment_id=%s coach_id=%s start=%s",
                appointment_id,
                coach_id,
                start_iso,
            )
            return AppointmentWriteResult(appointment_id=appointment_id, updated=True)

        document: dict[str, Any] = {"extended_props": {}}
        for path, value in fields.items():
            if path.startswith("extended_props."):
                document["extended_props"][path.split(".", maxsplit=1)[1]] = value
            else:
                document[path] = value
        document["created_at"] = now
        appointment_id = self.store.insert(document)
        logger.info(
            "Appointment created appointment_id=%s coach_id=%s start=%s",
            appointment_id,
            coach_id,
            start_iso,
        )
        return AppointmentWriteResult(appointment_id=appointment_id, created=True)

    def update_appointment_strict(
        self,
        *,
        student_name: str,
        coach_id: str,
        start: datetime,
        end: datetime,
        coach_hint: str | None,
        lesson_type: str | None = None,
        now: datetime | None = None,
    ) -> AppointmentWriteResult:
        _validate_window(start, end)
        student_key = canon(student_name)
        if not student_key:
            raise AppointmentNotFoundError("Update failed: student name is required.")

        reference_time = now or datetime.now(UTC)
        candidates = [
            record
            for record in self.store.find_starting_from(reference_time)
            if student_key in {canon(name) for name in collect_student_names(record)}
        ]
        if not candidates:
            raise AppointmentNotFoundError(
                f'Update failed: no future appointment found for student "{student_name}".',
            )

        candidates.sort(key=lambda record: record["start_ts"])
        target = candidates[0]
        ambiguous = len(candidates) > 1
        if ambiguous:
            logger.warning(
                "Update matched multiple future appointments student=%s count=%s chosen_id=%s",
                student_name,
                len(candidates),
                target["_id"],
            )

        old_props = target.get("extended_props")
        if not isinstance(old_props, Mapping):
            old_props = {}
        existing_names = collect_student_names(target)
        resolved_lesson_type = lesson_type or old_props.get("lesson_type")
        appointment_id = str(target["_id"])
        occupant = self.store.find_by_coach_and_start(coach_id, to_iso(start))
        if occupant and str(occupant["_id"]) != appointment_id:
            raise AppointmentAmbiguityError(
                f"Update failed: coach {coach_id} already has appointment {occupant['_id']} "
                f"starting at {to_iso(start)}.",
            )
        self.store.update(
            appointment_id,
            {
                "coach_id": coach_id,
                "start": to_iso(start),
                "end": to_iso(end),
                "start_ts": start.astimezone(UTC),
                "end_ts": end.astimezone(UTC),
                "extended_props.coach_id": coach_id,
                "extended_props.lesson_type": resolved_lesson_type,
                "extended_props.notes": generate_structured_notes(
                    student_name=existing_names[0] if existing_names else student_name,
                    course_name=resolved_lesson_type,
                    coach_name=coach_hint,
                    start=start,
                    end=end,
                    display_timezone=self.settings.display_timezone,
                ),
                "updated_at": datetime.now(UTC),
            },
        )
        logger.info(
            "Appointment updated appointment_id=%s coach_id=%s start=%s",
            appointment_id,
            coach_id,
            to_iso(start),
        )
        return AppointmentWriteResult(appointment_id=appointment_id, updated=True, ambiguous=ambiguous)

    def cancel_appointment_strict(
        self,
        *,
        start: datetime,
        student_names: Sequence[str],
        coach_id: str | None = None,
    ) -> AppointmentWriteResult:
        student_keys = {canon(name) for name in student_names if canon(name)}
        constraint = "time & student & coach" if coach_id else "time & student"
        if not student_keys:
            raise AppointmentNotFoundError(f"Cancel failed: no appointment matched by {constraint}.")

        def matches(record: Mapping[str, Any]) -> bool:
            record_keys = {canon(name) for name in collect_student_names(record)}
            if not student_keys & record_keys:
                return False
            if not coach_id:
                return True
            props = record.get("extended_props")
            record_coach_id = props.get("coach_id") if isinstance(props, Mapping) else None
            return (record_coach_id or record.get("coach_id")) == coach_id

        match_phase = "exact"
        candidates = [record for record in self.store.find_by_start(to_iso(start)) if matches(record)]
        if not candidates:
            match_phase = "window"
            window = timedelta(minutes=self.settings.cancel_match_window_minutes)
            minute = start.astimezone(UTC).replace(second=0, microsecond=0)
            candidates = [
                record
                for record in self.store.find_by_start_range(minute - window, minute + window)
                if matches(record)
            ]

        if not candidates:
            raise AppointmentNotFoundError(f"Cancel failed: no appointment matched by {constraint}.")
        if len(candidates) > 1:
            raise AppointmentAmbiguityError(
                f"Cancel failed: multiple appointments matched by {constraint}, disambiguation required.",
            )

        appointment_id = str(candidates[0]["_id"])
        self.store.delete(appointment_id)
        logger.info("Appointment deleted appointment_id=%s match_phase=%s", appointment_id, match_phase)
        return AppointmentWriteResult(appointment_id=appointment_id, deleted=True, match_phase=match_phase)

    def list_for_coach(self, coach_id: str, limit: int = 200) -> list[dict[str, Any]]:
        return self.store.list_by_coach(coach_id, limit=limit)


def _validate_window(start: datetime, end: datetime) -> None:
    if start.tzinfo is None or end.tzinfo is None:
        raise InvalidAppointmentWindowError("Appointment times must be timezone-aware.")
    if start >= end:
        raise InvalidAppointmentWindowError("Appointment start must be before end.")


def _truncate(value: str | None, max_chars: int) -> str | None:
    if not value:
        return None
    if len(value) <= max_chars:
        return value
    return value[:max_chars]
