from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import Any

from fastapi import HTTPException, status

from app.core.config import Settings
from app.schemas.ingestion import (
    IngestionRecord,
    IngestionRecordsResponse,
    IngestionResponse,
    IngestionStatus,
    ParsedEmailFields,
)
from app.services.action_classifier import EmailAction, classify_email_action
from app.services.appointment_repository import (
    AppointmentAmbiguityError,
    AppointmentNotFoundError,
    AppointmentRepository,
    AppointmentRepositoryError,
)
from app.services.coach_service import CoachService
from app.services.config_store import create_config_store
from app.services.email_parsers import (
    EmailContent,
    StudentNames,
    TimeWindow,
    extract_coach_hint,
    infer_lesson_type,
    parse_change_details,
    parse_students,
    parse_time_window,
)
from app.services.ingestion_store import IngestionStore, create_ingestion_store
from app.services.security_utils import build_payload_digest
from app.services.signature_verifier import WebhookSignatureVerifier
from app.services.text_normalizer import strip_html

logger = logging.getLogger(__name__)


class IngestionValidationError(Exception):
    pass


@dataclass(frozen=True)
class IngestionOutcome:
    status_code: int
    response: IngestionResponse


def normalize_email_payload(payload: Mapping[str, Any]) -> EmailContent:
    subject = _extract_first_string(payload, ("subject", "data.subject", "event.subject")) or ""
    text = _extract_first_string(payload, ("text", "data.text", "event.text")) or ""
    html = _extract_first_string(payload, ("html", "data.html", "event.html"))
    if not text and html:
        text = strip_html(html)
    return EmailContent(subject=subject, text=text, html=html)


def build_message_key(payload: Mapping[str, Any]) -> str:
    message_id = _extract_first_string(payload, ("messageId", "data.messageId", "event.messageId"))
    if message_id:
        return message_id
    return f"payload:{build_payload_digest(payload)}"


class EmailIngestionService:
    def __init__(
        self,
        settings: Settings,
        ingestion_store: IngestionStore | None = None,
        coach_service: CoachService | None = None,
        appointment_repository: AppointmentRepository | None = None,
        signature_verifier: WebhookSignatureVerifier | None = None,
    ) -> None:
        self.settings = settings
        self.ingestion_store = ingestion_store or create_ingestion_store(settings)
        self.coach_service = coach_service or CoachService(settings)
        self.appointment_repository = appointment_repository or AppointmentRepository(settings)
        self.signature_verifier = signature_verifier or WebhookSignatureVerifier(
            create_config_store(settings),
            header_name=settings.webhook_signature_header,
        )

    def process_webhook(
        self,
        payload: Mapping[str, Any],
        headers: Mapping[str, str],
    ) -> IngestionOutcome:
        if not self.signature_verifier.verify(payload, headers):
            return IngestionOutcome(
                status_code=status.HTTP_401_UNAUTHORIZED,
                response=IngestionResponse(ok=False, error="Invalid webhook signature."),
            )

        message_id = build_message_key(payload)
        now = datetime.now(UTC)
        stale_before = now - timedelta(seconds=self.settings.ingestion_processing_timeout_seconds)
        try:
            claim = self.ingestion_store.claim(message_id, payload, stale_before=stale_before)
        except Exception:
            logger.exception("Ingestion claim failed message_id=%s", message_id)
            return IngestionOutcome(
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                response=IngestionResponse(
                    ok=False,
                    message_id=message_id,
                    error="Unable to record ingestion state.",
                ),
            )

        if not claim.acquired:
            existing_status = (claim.record or {}).get("status")
            if existing_status == IngestionStatus.ok.value:
                logger.info("Ingestion duplicate message_id=%s", message_id)
                return IngestionOutcome(
                    status_code=status.HTTP_208_ALREADY_REPORTED,
                    response=IngestionResponse(ok=True, duplicate=True, message_id=message_id),
                )
            logger.warning("Ingestion already in progress message_id=%s", message_id)
            return IngestionOutcome(
                status_code=status.HTTP_409_CONFLICT,
                response=IngestionResponse(
                    ok=False,
                    message_id=message_id,
                    error="Message is already being processed.",
                ),
            )

        try:
            return self._process_claimed(message_id, normalize_email_payload(payload))
        except Exception as exc:
            logger.exception("Ingestion failed message_id=%s", message_id)
            self._finish_quietly(message_id, IngestionStatus.error, error=str(exc) or exc.__class__.__name__)
            return IngestionOutcome(
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                response=IngestionResponse(
                    ok=False,
                    message_id=message_id,
                    error=str(exc) or "Unexpected ingestion failure.",
                ),
            )

    def list_records(self, limit: int = 50) -> IngestionRecordsResponse:
        normalized_limit = min(max(limit, 1), self.settings.ingestion_records_max_limit)
        try:
            raw_items = self.ingestion_store.list_recent(limit=normalized_limit)
        except Exception as exc:
            raise HTTPException(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                detail="Unable to query ingestion storage.",
            ) from exc
        return IngestionRecordsResponse(items=[self._map_record(record) for record in raw_items])

    def get_record(self, message_id: str) -> IngestionRecord:
        try:
            record = self.ingestion_store.get(message_id)
        except Exception as exc:
            raise HTTPException(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                detail="Unable to query ingestion storage.",
            ) from exc

        if not record:
            raise HTTPException(
                status_code=status.HTTP_404_NOT_FOUND,
                detail="Ingestion record not found.",
            )
        return self._map_record(record)

    def _process_claimed(self, message_id: str, content: EmailContent) -> IngestionOutcome:
        if not (content.subject or content.text or content.html):
            return self._reject(message_id, None, "Missing subject/text.")

        action = classify_email_action(
            content.subject,
            content.text,
            unknown_policy=self.settings.unknown_email_policy,
        )
        logger.info("Ingestion classified message_id=%s action=%s", message_id, action.value)
        if action == EmailAction.unknown:
            self.ingestion_store.finish(
                message_id,
                IngestionStatus.skipped,
                action=action.value,
                error="Unknown email type.",
            )
            return IngestionOutcome(
                status_code=status.HTTP_400_BAD_REQUEST,
                response=IngestionResponse(
                    ok=False,
                    action=action.value,
                    message_id=message_id,
                    error="Unknown email type.",
                ),
            )

        coach_hint = extract_coach_hint(content)
        window = parse_time_window(content, business_timezone=self.settings.business_timezone)
        students = parse_students(content)
        logger.info(
            "Ingestion parsed message_id=%s coach_hint=%s start=%s end=%s time_source=%s students=%s",
            message_id,
            coach_hint,
            window.start.isoformat() if window.start else None,
            window.end.isoformat() if window.end else None,
            window.source,
            students.all_names(),
        )

        try:
            if action == EmailAction.book:
                return self._handle_book(message_id, content, coach_hint, window, students)
            if action == EmailAction.cancel:
                return self._handle_cancel(message_id, coach_hint, window, students)
            return self._handle_change(message_id, content, coach_hint, window, students)
        except IngestionValidationError as exc:
            return self._reject(message_id, action.value, str(exc))

    def _handle_book(
        self,
        message_id: str,
        content: EmailContent,
        coach_hint: str | None,
        window: TimeWindow,
        students: StudentNames,
    ) -> IngestionOutcome:
        action = EmailAction.book.value
        if not window.start or not window.end:
            raise IngestionValidationError("Booking parsed but start/end missing.")

        lesson_type = infer_lesson_type(content.subject, content.text)
        parsed = _build_parsed_fields(window, coach_hint, students, lesson_type)
        if self._is_expired(window.start):
            return self._expire(message_id, parsed)

        coach_id = self._resolve_required_coach(coach_hint, "Booking")
        try:
            result = self.appointment_repository.upsert_appointment(
                coach_id=coach_id,
                start=window.start,
                end=window.end,
                subject=content.subject,
                text=content.text,
                students=students,
                coach_hint=coach_hint,
                lesson_type=lesson_type,
            )
        except AppointmentRepositoryError as exc:
            return self._reject(message_id, action, str(exc), coach_id=coach_id, parsed=parsed)

        return self._succeed(
            message_id,
            IngestionResponse(
                ok=True,
                action=action,
                coach_id=coach_id,
                appointment_id=result.appointment_id,
                created=result.created,
                parsed=parsed,
            ),
        )

    def _handle_cancel(
        self,
        message_id: str,
        coach_hint: str | None,
        window: TimeWindow,
        students: StudentNames,
    ) -> IngestionOutcome:
        action = EmailAction.cancel.value
        if not window.start:
            raise IngestionValidationError("Cancel requires start time.")
        student_names = students.all_names()
        if not student_names:
            raise IngestionValidationError("Cancel requires student name(s).")

        parsed = _build_parsed_fields(window, coach_hint, students, None)
        coach_id: str | None = None
        if coach_hint:
            coach_id = self.coach_service.resolve_coach_id(coach_hint)
            if not coach_id:
                logger.info(
                    "Cancel proceeding without coach constraint message_id=%s coach_hint=%s",
                    message_id,
                    coach_hint,
                )

        expired = self._is_expired(window.start)
        try:
            result = self.appointment_repository.cancel_appointment_strict(
                start=window.start,
                student_names=student_names,
                coach_id=coach_id,
            )
        except (AppointmentNotFoundError, AppointmentAmbiguityError) as exc:
            if expired:
                logger.info("Cancel target missing for expired event message_id=%s detail=%s", message_id, exc)
                return self._expire(message_id, parsed)
            return self._reject(message_id, action, str(exc), coach_id=coach_id, parsed=parsed)

        return self._succeed(
            message_id,
            IngestionResponse(
                ok=True,
                action=action,
                coach_id=coach_id,
                appointment_id=result.appointment_id,
                deleted=result.deleted,
                match_phase=result.match_phase,
                parsed=parsed,
            ),
        )

    def _handle_change(
        self,
        message_id: str,
        content: EmailContent,
        coach_hint: str | None,
        window: TimeWindow,
        students: StudentNames,
    ) -> IngestionOutcome:
        action = EmailAction.change.value
        details = parse_change_details(content.text, business_timezone=self.settings.business_timezone)
        if details.start:
            window = TimeWindow(start=details.start, end=details.end, source="change_details")
        student_name = details.student_name or students.student_name
        coach_hint = details.coach_hint or coach_hint
        lesson_type = details.course_name

        if not window.start or not window.end:
            raise IngestionValidationError("Change requires new start/end.")
        if not student_name:
            raise IngestionValidationError("Change requires a student name.")

        parsed = _build_parsed_fields(
            window,
            coach_hint,
            StudentNames(student_name=student_name, student_names=[student_name]),
            lesson_type,
        )
        if self._is_expired(window.start):
            return self._expire(message_id, parsed)

        coach_id = self._resolve_required_coach(coach_hint, "Change")
        try:
            result = self.appointment_repository.update_appointment_strict(
                student_name=student_name,
                coach_id=coach_id,
                start=window.start,
                end=window.end,
                coach_hint=coach_hint,
                lesson_type=lesson_type,
            )
        except AppointmentRepositoryError as exc:
            return self._reject(message_id, action, str(exc), coach_id=coach_id, parsed=parsed)

        return self._succeed(
            message_id,
            IngestionResponse(
                ok=True,
                action=action,
                coach_id=coach_id,
                appointment_id=result.appointment_id,
                ambiguous=result.ambiguous,
                parsed=parsed,
            ),
        )

    def _resolve_required_coach(self, coach_hint: str | None, label: str) -> str:
        if not coach_hint:
            raise IngestionValidationError(f"{label} requires a coach (not found in subject/text).")
        coach_id = self.coach_service.resolve_coach_id(coach_hint)
        if not coach_id:
            raise IngestionValidationError(
                f"Coach not found for hint: {coach_hint}. Add it to the coach aliases.",
            )
        return coach_id

    def _is_expired(self, start: datetime) -> bool:
        grace = timedelta(minutes=self.settings.past_grace_minutes)
        return start < datetime.now(UTC) - grace

    def _succeed(self, message_id: str, response: IngestionResponse) -> IngestionOutcome:
        self.ingestion_store.finish(
            message_id,
            IngestionStatus.ok,
            action=response.action,
            appointment_id=response.appointment_id,
            coach_id=response.coach_id,
        )
        logger.info(
            "Ingestion completed message_id=%s action=%s appointment_id=%s",
            message_id,
            response.action,
            response.appointment_id,
        )
        return IngestionOutcome(
            status_code=status.HTTP_200_OK,
            response=response.model_copy(update={"message_id": message_id}),
        )

    def _expire(self, message_id: str, parsed: ParsedEmailFields) -> IngestionOutcome:
        reason = (
            f"Event starts more than {self.settings.past_grace_minutes} minutes in the past; "
            "no changes applied."
        )
        self.ingestion_store.finish(message_id, IngestionStatus.ok, action="expired")
        logger.info("Ingestion expired message_id=%s start=%s", message_id, parsed.start)
        return IngestionOutcome(
            status_code=status.HTTP_200_OK,
            response=IngestionResponse(
                ok=True,
                action="expired",
                expired=True,
                reason=reason,
                message_id=message_id,
                parsed=parsed,
            ),
        )

    def _reject(
        self,
        message_id: str,
        action: str | None,
        error: str,
        *,
        coach_id: str | None = None,
        parsed: ParsedEmailFields | None = None,
    ) -> IngestionOutcome:
        self.ingestion_store.finish(
            message_id,
            IngestionStatus.error,
            action=action,
            coach_id=coach_id,
            error=error,
        )
        logger.warning("Ingestion rejected message_id=%s action=%s error=%s", message_id, action, error)
        return IngestionOutcome(
            status_code=status.HTTP_400_BAD_REQUEST,
            response=IngestionResponse(
                ok=False,
                action=action,
                message_id=message_id,
                coach_id=coach_id,
                error=error,
                parsed=parsed,
            ),
        )

    def _finish_quietly(self, message_id: str, ingestion_status: IngestionStatus, *, error: str) -> None:
        try:
            self.ingestion_store.finish(message_id, ingestion_status, error=error)
        except Exception:
            logger.exception("Unable to record ingestion failure message_id=%s", message_id)

    def _map_record(self, record: Mapping[str, Any]) -> IngestionRecord:
        now = datetime.now(UTC)
        raw_payload = record.get("raw_payload")
        return IngestionRecord(
            message_id=str(record.get("message_id") or record.get("_id") or ""),
            status=IngestionStatus(str(record.get("status") or IngestionStatus.seen.value)),
            action=_to_text(record.get("action")),
            appointment_id=_to_text(record.get("appointment_id")),
            coach_id=_to_text(record.get("coach_id")),
            error=_to_text(record.get("error")),
            attempts=int(record.get("attempts") or 1),
            raw_payload=dict(raw_payload) if isinstance(raw_payload, Mapping) else {},
            received_at=record.get("received_at") or now,
            updated_at=record.get("updated_at") or now,
        )


def _build_parsed_fields(
    window: TimeWindow,
    coach_hint: str | None,
    students: StudentNames,
    lesson_type: str | None,
) -> ParsedEmailFields:
    return ParsedEmailFields(
        start=window.start,
        end=window.end,
        time_source=window.source,
        coach_hint=coach_hint,
        student_name=students.student_name,
        student_names=list(students.student_names),
        lesson_type=lesson_type,
    )


def _extract_first_string(payload: Mapping[str, Any], paths: tuple[str, ...]) -> str | None:
    for path in paths:
        text = _to_text(_extract_path(payload, path))
        if text:
            return text
    return None


def _extract_path(payload: Mapping[str, Any], path: str) -> Any:
    value: Any = payload
    for segment in path.split("."):
        if not isinstance(value, Mapping):
            return None
        if segment not in value:
            return None
        value = value[segment]
    return value


def _to_text(value: Any) -> str | None:
    if not isinstance(value, str):
        return None
    cleaned = value.strip()
    return cleaned or None
