from __future__ import annotations

import json
import re
from collections.abc import Callable, Iterator
from dataclasses import dataclass, field
from datetime import UTC, datetime, tzinfo
from typing import Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from app.services.text_normalizer import canon, collapse_whitespace

_CLOCK = r"\d{1,2}:\d{2}\s*[AP]\.?M\.?"
_CLOCK_PATTERN = re.compile(r"^(\d{1,2}):(\d{2})\s*([AP])\.?M\.?$", re.IGNORECASE)
_MONTHS = {
    "jan": 1,
    "feb": 2,
    "mar": 3,
    "apr": 4,
    "may": 5,
    "jun": 6,
    "jul": 7,
    "aug": 8,
    "sep": 9,
    "oct": 10,
    "nov": 11,
    "dec": 12,
}
_TIMEZONE_ABBREVIATIONS = {
    "utc": "UTC",
    "gmt": "UTC",
    "pt": "America/Los_Angeles",
    "pst": "America/Los_Angeles",
    "pdt": "America/Los_Angeles",
    "pacific time": "America/Los_Angeles",
    "mt": "America/Denver",
    "mst": "America/Denver",
    "mdt": "America/Denver",
    "mountain time": "America/Denver",
    "ct": "America/Chicago",
    "cst": "America/Chicago",
    "cdt": "America/Chicago",
    "central time": "America/Chicago",
    "et": "America/New_York",
    "est": "America/New_York",
    "edt": "America/New_York",
    "eastern time": "America/New_York",
}

_COACH_HINT_PATTERNS: tuple[re.Pattern[str], ...] = (
    re.compile(r"Who:\s*Coach\s*([A-Za-z]+)", re.IGNORECASE),
    re.compile(r"with\s+Coach\s*([A-Za-z\s]+?)\b", re.IGNORECASE),
    re.compile(r"\bwith\s+([A-Za-z\s]+?)\s+for\b", re.IGNORECASE),
    re.compile(r"\bCoach\s+([A-Za-z]+)\b", re.IGNORECASE),
    re.compile(r"\bCoach([A-Z][a-z]+)\b"),
)
_TRAILING_FOR_CLAUSE_PATTERN = re.compile(r"\s+for\b.*$", re.IGNORECASE | re.DOTALL)
_NON_LETTER_PATTERN = re.compile(r"[^\w\s]|[\d_]")

_LD_JSON_PATTERN = re.compile(
    r"<script[^>]+type=[\"']application/ld\+json[\"'][^>]*>([\s\S]*?)</script>",
    re.IGNORECASE,
)
_DATED_PHRASE_PATTERN = re.compile(
    rf"\bon\s+(\d{{2}})[-/](\d{{2}})[-/](\d{{4}})\s+at\s+({_CLOCK})(?![A-Za-z])",
    re.IGNORECASE,
)
_DATED_PHRASE_END_PATTERN = re.compile(rf"(?:–|\bto\b)\s*({_CLOCK})(?![A-Za-z])", re.IGNORECASE)
_DATED_PHRASE_END_LOOKAHEAD = 120
_CALENDAR_WHEN_PATTERN = re.compile(
    rf"When:\s*([A-Za-z]{{3,}})\.?\s+([A-Za-z]{{3,}})\.?\s+(\d{{1,2}}),\s+(\d{{4}})\s+({_CLOCK})"
    rf"\s*(?:–|—|-)\s*({_CLOCK})(?:\s*\(([^)]+)\))?",
    re.IGNORECASE,
)

_BOOKING_SUBJECT_PATTERN = re.compile(r"^(.+?)\s+has booked", re.IGNORECASE)
_CANCELLED_FOR_PATTERN = re.compile(r"has been cancell?ed for\s+(.+?)\.", re.IGNORECASE)
_CANCELLATION_SUBJECT_PATTERN = re.compile(r"cancellation of.*?for\s+(.+)", re.IGNORECASE)
_STUDENT_SEPARATOR_PATTERN = re.compile(r"\s+and\s+|,", re.IGNORECASE)

_CHANGE_STUDENT_PATTERN = re.compile(
    r"^Confirmation:\s+(.+?)[’']s booking",
    re.IGNORECASE | re.MULTILINE,
)
_CHANGE_DETAILS_PATTERN = re.compile(
    rf"booking for (.+?) changed to\s+(\d{{2}})[-/](\d{{2}})[-/](\d{{4}})\s+at\s+({_CLOCK})"
    rf"\s+to\s+({_CLOCK})(?:\s+with\s+Coach\s*([A-Za-z][A-Za-z ]*))?",
    re.IGNORECASE,
)


@dataclass(frozen=True)
class EmailContent:
    subject: str = ""
    text: str = ""
    html: str | None = None

    @property
    def candidate_texts(self) -> tuple[str, ...]:
        return (self.text or "", self.html or "", self.subject or "")

    @property
    def subject_and_text(self) -> str:
        return f"{self.subject or ''}\n{self.text or ''}"


@dataclass(frozen=True)
class TimeWindow:
    start: datetime | None = None
    end: datetime | None = None
    source: str | None = None

    @property
    def is_complete(self) -> bool:
        return self.start is not None and self.end is not None


@dataclass(frozen=True)
class StudentNames:
    student_name: str | None = None
    student_names: list[str] = field(default_factory=list)

    def all_names(self) -> list[str]:
        names: list[str] = []
        seen: set[str] = set()
        for candidate in (self.student_name, *self.student_names):
            key = canon(candidate)
            if not key or key in seen:
                continue
            seen.add(key)
            names.append(collapse_whitespace(candidate))
        return names

    @property
    def is_empty(self) -> bool:
        return not self.all_names()


@dataclass(frozen=True)
class ChangeDetails:
    student_name: str | None = None
    start: datetime | None = None
    end: datetime | None = None
    coach_hint: str | None = None
    course_name: str | None = None


TimeWindowStrategy = Callable[[EmailContent, tzinfo], TimeWindow | None]
StudentStrategy = Callable[[EmailContent], StudentNames | None]


def clean_coach_hint(raw: str | None) -> str | None:
    if not raw:
        return None
    cleaned = _TRAILING_FOR_CLAUSE_PATTERN.sub("", raw)
    cleaned = _NON_LETTER_PATTERN.sub(" ", cleaned)
    cleaned = collapse_whitespace(cleaned)
    return cleaned or None


def extract_coach_hint(content: EmailContent) -> str | None:
    for haystack in content.candidate_texts:
        if not haystack:
            continue
        for pattern in _COACH_HINT_PATTERNS:
            match = pattern.search(haystack)
            if match and match.group(1):
                hint = clean_coach_hint(match.group(1))
                if hint:
                    return hint
    return None


def parse_structured_data_window(content: EmailContent, zone: tzinfo) -> TimeWindow | None:
    if not content.html:
        return None

    for block in _LD_JSON_PATTERN.findall(content.html):
        try:
            document = json.loads(block.strip())
        except json.JSONDecodeError:
            continue
        for candidate in _iter_structured_objects(document):
            start = _parse_iso_datetime(_read_structured_date(candidate, "startDate"), zone)
            if not start:
                continue
            end = _parse_iso_datetime(_read_structured_date(candidate, "endDate"), zone)
            return TimeWindow(start=start, end=end)
    return None


def parse_dated_phrase_window(content: EmailContent, zone: tzinfo) -> TimeWindow | None:
    haystack = content.subject_and_text
    match = _DATED_PHRASE_PATTERN.search(haystack)
    if not match:
        return None

    month, day, year, clock = match.groups()
    start_local = _build_local_datetime(int(year), int(month), int(day), clock, zone)
    if not start_local:
        return None

    end_local: datetime | None = None
    trailing = haystack[match.end() : match.start() + _DATED_PHRASE_END_LOOKAHEAD]
    end_match = _DATED_PHRASE_END_PATTERN.search(trailing)
    if end_match:
        end_local = _build_local_datetime(
            start_local.year,
            start_local.month,
            start_local.day,
            end_match.group(1),
            zone,
        )
    return TimeWindow(start=_to_utc(start_local), end=_to_utc(end_local))


def parse_calendar_when_window(content: EmailContent, zone: tzinfo) -> TimeWindow | None:
    for haystack in (content.text, content.subject):
        if not haystack:
            continue
        match = _CALENDAR_WHEN_PATTERN.search(haystack)
        if not match:
            continue
        _, month_name, day, year, start_clock, end_clock, zone_name = match.groups()
        month = _MONTHS.get(month_name[:3].lower())
        if not month:
            continue
        match_zone = resolve_timezone(zone_name) if zone_name else UTC
        if match_zone is None:
            continue
        start_local = _build_local_datetime(int(year), month, int(day), start_clock, match_zone)
        if not start_local:
            continue
        end_local = _build_local_datetime(int(year), month, int(day), end_clock, match_zone)
        return TimeWindow(start=_to_utc(start_local), end=_to_utc(end_local))
    return None


TIME_WINDOW_STRATEGIES: tuple[tuple[str, TimeWindowStrategy], ...] = (
    ("structured_data", parse_structured_data_window),
    ("dated_phrase", parse_dated_phrase_window),
    ("calendar_when", parse_calendar_when_window),
)


def parse_time_window(
    content: EmailContent,
    business_timezone: str = "America/Los_Angeles",
) -> TimeWindow:
    zone = resolve_timezone(business_timezone) or UTC
    for source, strategy in TIME_WINDOW_STRATEGIES:
        window = strategy(content, zone)
        if window and window.start:
            return TimeWindow(start=window.start, end=window.end, source=source)
    return TimeWindow()


def split_student_list(raw: str | None) -> list[str]:
    if not raw:
        return []
    normalized = _STUDENT_SEPARATOR_PATTERN.sub("&", raw)
    return [collapse_whitespace(part) for part in normalized.split("&") if part.strip()]


def _students_from_raw(raw: str) -> StudentNames | None:
    cleaned = collapse_whitespace(raw).rstrip(".")
    if not cleaned:
        return None
    return StudentNames(student_name=cleaned, student_names=split_student_list(cleaned) or [cleaned])


def _booking_subject_students(content: EmailContent) -> StudentNames | None:
    match = _BOOKING_SUBJECT_PATTERN.search((content.subject or "").strip())
    return _students_from_raw(match.group(1)) if match else None


def _cancelled_for_body_students(content: EmailContent) -> StudentNames | None:
    match = _CANCELLED_FOR_PATTERN.search(content.text or "")
    return _students_from_raw(match.group(1)) if match else None


def _cancellation_subject_students(content: EmailContent) -> StudentNames | None:
    match = _CANCELLATION_SUBJECT_PATTERN.search(content.subject or "")
    return _students_from_raw(match.group(1)) if match else None


STUDENT_STRATEGIES: tuple[StudentStrategy, ...] = (
    _booking_subject_students,
    _cancelled_for_body_students,
    _cancellation_subject_students,
)


def parse_students(content: EmailContent) -> StudentNames:
    for strategy in STUDENT_STRATEGIES:
        students = strategy(content)
        if students and not students.is_empty:
            return students
    return StudentNames()


def parse_change_details(
    text: str,
    business_timezone: str = "America/Los_Angeles",
) -> ChangeDetails:
    student_name: str | None = None
    start: datetime | None = None
    end: datetime | None = None
    coach_hint: str | None = None
    course_name: str | None = None

    student_match = _CHANGE_STUDENT_PATTERN.search(text or "")
    if student_match:
        student_name = collapse_whitespace(student_match.group(1)) or None

    details_match = _CHANGE_DETAILS_PATTERN.search(text or "")
    if details_match:
        raw_course, month, day, year, start_clock, end_clock, raw_coach = details_match.groups()
        course_name = collapse_whitespace(raw_course) or None
        zone = resolve_timezone(business_timezone) or UTC
        start_local = _build_local_datetime(int(year), int(month), int(day), start_clock, zone)
        if start_local:
            start = _to_utc(start_local)
            end = _to_utc(
                _build_local_datetime(int(year), int(month), int(day), end_clock, zone),
            )
        coach_hint = clean_coach_hint(raw_coach)

    return ChangeDetails(
        student_name=student_name,
        start=start,
        end=end,
        coach_hint=coach_hint,
        course_name=course_name,
    )


def infer_lesson_type(*texts: str | None) -> str:
    for text in texts:
        if text and "private lesson" in text.lower():
            return "Private lesson"
    return "Trial class"


def resolve_timezone(name: str | None) -> tzinfo | None:
    if not name:
        return None
    cleaned = name.strip()
    try:
        return ZoneInfo(cleaned)
    except (ZoneInfoNotFoundError, ValueError):
        pass
    canonical = _TIMEZONE_ABBREVIATIONS.get(canon(cleaned))
    if canonical:
        return ZoneInfo(canonical)
    return None


def _iter_structured_objects(document: Any) -> Iterator[dict[str, Any]]:
    if isinstance(document, list):
        for item in document:
            yield from _iter_structured_objects(item)
        return
    if not isinstance(document, dict):
        return
    yield document
    graph = document.get("@graph")
    if isinstance(graph, list):
        for item in graph:
            yield from _iter_structured_objects(item)


def _read_structured_date(candidate: dict[str, Any], key: str) -> str | None:
    for container in (
        candidate,
        candidate.get("reservationFor"),
        candidate.get("reservation"),
    ):
        if not isinstance(container, dict):
            continue
        value = container.get(key)
        if isinstance(value, str) and value.strip():
            return value.strip()
    return None


def _parse_iso_datetime(value: str | None, zone: tzinfo) -> datetime | None:
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=zone)
    return parsed.astimezone(UTC)


def _parse_clock(value: str) -> tuple[int, int] | None:
    match = _CLOCK_PATTERN.match(collapse_whitespace(value))
    if not match:
        return None
    hour, minute, meridiem = int(match.group(1)), int(match.group(2)), match.group(3).upper()
    if not 1 <= hour <= 12 or minute > 59:
        return None
    if meridiem == "A":
        hour = 0 if hour == 12 else hour
    else:
        hour = 12 if hour == 12 else hour + 12
    return hour, minute


def _build_local_datetime(
    year: int,
    month: int,
    day: int,
    clock: str,
    zone: tzinfo,
) -> datetime | None:
    parsed_clock = _parse_clock(clock)
    if not parsed_clock:
        return None
    hour, minute = parsed_clock
    try:
        return datetime(year, month, day, hour, minute, tzinfo=zone)
    except ValueError:
        return None


def _to_utc(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    return value.astimezone(UTC)
