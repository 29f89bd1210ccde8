from __future__ import annotations

import logging
import re
from collections.abc import Iterable, Mapping
from datetime import UTC, datetime
from typing import Any

from fastapi import HTTPException, status

from app.core.config import Settings
from app.schemas.appointment import AppointmentRecord, AppointmentsResponse
from app.schemas.coach import CoachProfileRequest, CoachRecord
from app.services.appointment_repository import AppointmentRepository, collect_student_names
from app.services.coach_store import CoachStore, create_coach_store
from app.services.text_normalizer import canon_alias, collapse_whitespace

logger = logging.getLogger(__name__)

_COACH_PREFIX_PATTERN = re.compile(r"^Coach\s*", re.IGNORECASE)
_CAMEL_BOUNDARY_PATTERN = re.compile(r"([a-z])([A-Z])")


def build_coach_aliases(
    display_name: str | None,
    email: str | None,
    extra_aliases: Iterable[str] = (),
) -> list[str]:
    aliases: list[str] = []
    seen: set[str] = set()

    def add(value: str | None) -> None:
        cleaned = (value or "").strip()
        if not cleaned:
            return
        key = cleaned.lower()
        if key in seen:
            return
        seen.add(key)
        aliases.append(cleaned)

    add(display_name)
    add(email)
    if email and "@" in email:
        add(email.split("@", maxsplit=1)[0])
    for alias in extra_aliases:
        add(alias)
    return aliases


def build_hint_variants(hint: str) -> list[str]:
    raw = hint.strip()
    candidates = (
        raw,
        _COACH_PREFIX_PATTERN.sub("", raw).strip(),
        f"Coach {raw}".strip(),
        re.sub(r"\s+", "", raw),
        _CAMEL_BOUNDARY_PATTERN.sub(r"\1 \2", raw),
    )
    variants: list[str] = []
    for candidate in candidates:
        if candidate and candidate not in variants:
            variants.append(candidate)
    return variants


class CoachService:
    def __init__(
        self,
        settings: Settings,
        store: CoachStore | None = None,
        appointment_repository: AppointmentRepository | None = None,
    ) -> None:
        self.settings = settings
        self.store = store or create_coach_store(settings)
        self.appointment_repository = appointment_repository or AppointmentRepository(settings)

    def resolve_coach_id(self, hint: str | None) -> str | None:
        if not hint or not hint.strip():
            return None

        for variant in build_hint_variants(hint):
            coach = self.store.find_coach_by_alias(variant)
            if coach:
                logger.info("Coach resolved coach_id=%s hint=%s variant=%s", coach["_id"], hint, variant)
                return str(coach["_id"])

        target_forms = _comparison_forms(hint)
        for coach in self.store.list_coaches(limit=self.settings.coach_scan_limit):
            alias_forms: set[str] = set()
            for alias in coach.get("aliases") or []:
                if isinstance(alias, str):
                    alias_forms.update(_comparison_forms(alias))
            if target_forms & alias_forms:
                logger.info("Coach resolved by scan coach_id=%s hint=%s", coach["_id"], hint)
                return str(coach["_id"])

        logger.warning("Coach not found for hint=%s", hint)
        return None

    def get_coach(self, coach_id: str) -> CoachRecord:
        try:
            record = self.store.get_coach_by_id(coach_id)
        except Exception as exc:
            raise HTTPException(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                detail="Unable to query coach storage.",
            ) from exc

        if not record:
            raise HTTPException(
                status_code=status.HTTP_404_NOT_FOUND,
                detail="Coach not found.",
            )
        return self._map_record(record)

    def upsert_profile(self, coach_id: str, payload: CoachProfileRequest) -> CoachRecord:
        cleaned_coach_id = coach_id.strip()
        if not cleaned_coach_id:
            raise HTTPException(
                status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
                detail="coach_id must not be empty.",
            )

        existing = self.store.get_coach_by_id(cleaned_coach_id) or {}
        email = _to_text(payload.email) or _to_text(existing.get("email"))
        display_name = (
            _to_text(payload.display_name)
            or _to_text(existing.get("display_name"))
            or (email.split("@", maxsplit=1)[0] if email else None)
            or "Coach"
        )
        aliases = build_coach_aliases(display_name, email, payload.extra_aliases)
        record = self.store.upsert_coach(
            cleaned_coach_id,
            email=email,
            display_name=display_name,
            aliases=aliases,
        )
        logger.info(
            "Coach profile %s coach_id=%s aliases=%s",
            "updated" if existing else "created",
            cleaned_coach_id,
            aliases,
        )
        return self._map_record(record)

    def list_appointments(self, coach_id: str, limit: int = 200) -> AppointmentsResponse:
        try:
            records = self.appointment_repository.list_for_coach(coach_id, limit=limit)
        except Exception as exc:
            raise HTTPException(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                detail="Unable to query appointment storage.",
            ) from exc
        return AppointmentsResponse(
            coach_id=coach_id,
            items=[_map_appointment(record) for record in records],
        )

    def _map_record(self, record: Mapping[str, Any]) -> CoachRecord:
        now = datetime.now(UTC)
        return CoachRecord(
            id=str(record.get("_id", "")),
            email=_to_text(record.get("email")),
            display_name=_to_text(record.get("display_name")) or "",
            aliases=[alias for alias in record.get("aliases") or [] if isinstance(alias, str)],
            created_at=record.get("created_at") or now,
            updated_at=record.get("updated_at") or now,
        )


def _map_appointment(record: Mapping[str, Any]) -> AppointmentRecord:
    props = record.get("extended_props")
    if not isinstance(props, Mapping):
        props = {}
    return AppointmentRecord(
        id=str(record.get("_id", "")),
        coach_id=str(record.get("coach_id") or props.get("coach_id") or ""),
        title=_to_text(record.get("title")) or "Lesson",
        start=str(record.get("start") or ""),
        end=str(record.get("end") or ""),
        subject=_to_text(props.get("subject")),
        lesson_type=_to_text(props.get("lesson_type")),
        notes=props.get("notes") if isinstance(props.get("notes"), str) else None,
        student_names=collect_student_names(record),
        created_at=record.get("created_at"),
        updated_at=record.get("updated_at"),
    )


def _comparison_forms(value: str) -> set[str]:
    normalized = canon_alias(value)
    if not normalized:
        return set()
    return {normalized, normalized.replace(" ", "")}


def _to_text(value: Any) -> str | None:
    if not isinstance(value, str):
        return None
    cleaned = collapse_whitespace(value)
    return cleaned or None
