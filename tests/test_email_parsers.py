import json
from datetime import UTC, datetime
from zoneinfo import ZoneInfo

from app.services.action_classifier import EmailAction, classify_email_action
from app.services.appointment_repository import format_display_time
from app.services.email_parsers import (
    EmailContent,
    extract_coach_hint,
    infer_lesson_type,
    parse_calendar_when_window,
    parse_change_details,
    parse_dated_phrase_window,
    parse_structured_data_window,
    parse_students,
    parse_time_window,
    resolve_timezone,
    split_student_list,
)

LOS_ANGELES = ZoneInfo("America/Los_Angeles")


def _ld_json_html(document: dict) -> str:
    return (
        "<html><head>"
        f'<script type="application/ld+json">{json.dumps(document)}</script>'
        "</head><body><p>Your lesson is booked.</p></body></html>"
    )


def test_classifier_recognizes_booking_cancellation_and_change() -> None:
    assert classify_email_action("Alice Chen has booked Private lesson", "") == EmailAction.book
    assert classify_email_action("Update", "Your lesson has been cancelled for Ben.") == EmailAction.cancel
    assert classify_email_action("Booking change", "Your lesson was rescheduled.") == EmailAction.change


def test_classifier_checks_cancellation_before_change() -> None:
    action = classify_email_action(
        "Calendar updated",
        "The lesson has been canceled for Ben Park.",
    )

    assert action == EmailAction.cancel


def test_classifier_unknown_content_follows_policy() -> None:
    assert classify_email_action("Newsletter", "Swim tips for August") == EmailAction.unknown
    assert classify_email_action("Newsletter", "Swim tips", unknown_policy="book") == EmailAction.book


def test_extract_coach_hint_from_camel_joined_subject() -> None:
    content = EmailContent(
        subject="Alice Chen has booked Private lesson with CoachAmber",
        text="When: Thu Aug 15, 2030 2:00 PM – 3:00 PM (America/Los_Angeles)",
    )

    assert extract_coach_hint(content) == "Amber"


def test_extract_coach_hint_prefers_who_line_in_body() -> None:
    content = EmailContent(
        subject="New booking",
        text="What: Trial class\nWho: Coach Jordan\nWhere: Pool 2",
    )

    assert extract_coach_hint(content) == "Jordan"


def test_extract_coach_hint_from_with_for_phrase() -> None:
    content = EmailContent(text="Your session with Marcus Lee for Private lesson is confirmed.")

    assert extract_coach_hint(content) == "Marcus Lee"


def test_extract_coach_hint_returns_none_without_match() -> None:
    assert extract_coach_hint(EmailContent(subject="Hello", text="See you soon.")) is None


def test_structured_data_window_reads_reservation_for_dates() -> None:
    content = EmailContent(
        html=_ld_json_html(
            {
                "@context": "https://schema.org",
                "@type": "EventReservation",
                "reservationFor": {
                    "@type": "Event",
                    "startDate": "2030-08-15T14:00:00-07:00",
                    "endDate": "2030-08-15T15:00:00-07:00",
                },
            },
        ),
    )

    window = parse_structured_data_window(content, LOS_ANGELES)

    assert window is not None
    assert window.start == datetime(2030, 8, 15, 21, 0, tzinfo=UTC)
    assert window.end == datetime(2030, 8, 15, 22, 0, tzinfo=UTC)
    assert window.start.tzinfo == UTC


def test_structured_data_window_reads_graph_and_naive_values_in_business_zone() -> None:
    content = EmailContent(
        html=_ld_json_html(
            {
                "@graph": [
                    {"@type": "Organization", "name": "Swim School"},
                    {"@type": "Event", "startDate": "2030-01-10T09:30:00"},
                ],
            },
        ),
    )

    window = parse_structured_data_window(content, LOS_ANGELES)

    assert window is not None
    assert window.start == datetime(2030, 1, 10, 17, 30, tzinfo=UTC)
    assert window.end is None


def test_structured_data_time_round_trips_to_display_wall_clock() -> None:
    content = EmailContent(
        html=_ld_json_html({"@type": "Event", "startDate": "2030-08-15T14:00:00-07:00"}),
    )

    window = parse_time_window(content, business_timezone="America/Los_Angeles")

    assert window.source == "structured_data"
    assert window.start is not None
    local = window.start.astimezone(LOS_ANGELES)
    assert (local.year, local.month, local.day) == (2030, 8, 15)
    assert format_display_time(window.start, LOS_ANGELES) == "2:00 PM"


def test_structured_data_window_skips_invalid_blocks() -> None:
    html = (
        '<script type="application/ld+json">{not json}</script>'
        '<script type="application/ld+json">{"startDate": "2030-08-15T14:00:00-07:00"}</script>'
    )

    window = parse_structured_data_window(EmailContent(html=html), LOS_ANGELES)

    assert window is not None
    assert window.start == datetime(2030, 8, 15, 21, 0, tzinfo=UTC)


def test_dated_phrase_window_reads_start_and_end() -> None:
    content = EmailContent(
        subject="Alice Chen has booked Private lesson",
        text="Your lesson on 08-15-2030 at 2:00 PM – 2:30 PM with Coach Amber is confirmed.",
    )

    window = parse_dated_phrase_window(content, LOS_ANGELES)

    assert window is not None
    assert window.start == datetime(2030, 8, 15, 21, 0, tzinfo=UTC)
    assert window.end == datetime(2030, 8, 15, 21, 30, tzinfo=UTC)


def test_dated_phrase_window_without_end_leaves_end_empty() -> None:
    content = EmailContent(text="Lesson for Ben Park on 08-15-2030 at 9:05 AM has been cancelled.")

    window = parse_dated_phrase_window(content, LOS_ANGELES)

    assert window is not None
    assert window.start == datetime(2030, 8, 15, 16, 5, tzinfo=UTC)
    assert window.end is None


def test_calendar_when_window_uses_named_zone() -> None:
    content = EmailContent(
        text="When: Fri Aug 15, 2025 2:00 PM – 3:00 PM (America/Los_Angeles)",
    )

    window = parse_calendar_when_window(content, UTC)

    assert window is not None
    assert window.start == datetime(2025, 8, 15, 14, 0, tzinfo=LOS_ANGELES)
    assert window.end == datetime(2025, 8, 15, 15, 0, tzinfo=LOS_ANGELES)


def test_calendar_when_window_defaults_to_utc_and_accepts_abbreviations() -> None:
    without_zone = parse_calendar_when_window(
        EmailContent(text="When: Mon Sep 2, 2030 10:00 AM - 11:00 AM"),
        LOS_ANGELES,
    )
    with_abbreviation = parse_calendar_when_window(
        EmailContent(text="When: Mon Sep 2, 2030 10:00 AM - 11:00 AM (EDT)"),
        LOS_ANGELES,
    )

    assert without_zone is not None
    assert without_zone.start == datetime(2030, 9, 2, 10, 0, tzinfo=UTC)
    assert with_abbreviation is not None
    assert with_abbreviation.start == datetime(2030, 9, 2, 14, 0, tzinfo=UTC)


def test_parse_time_window_prefers_structured_data_over_text() -> None:
    content = EmailContent(
        text="Your lesson on 08-16-2030 at 9:00 AM is confirmed.",
        html=_ld_json_html({"@type": "Event", "startDate": "2030-08-15T14:00:00-07:00"}),
    )

    window = parse_time_window(content)

    assert window.source == "structured_data"
    assert window.start == datetime(2030, 8, 15, 21, 0, tzinfo=UTC)


def test_parse_time_window_returns_empty_window_when_nothing_matches() -> None:
    window = parse_time_window(EmailContent(subject="Hello", text="No dates here."))

    assert window.start is None
    assert window.end is None
    assert window.source is None
    assert not window.is_complete


def test_split_student_list_normalizes_separators() -> None:
    assert split_student_list("Alice Chen and Bo Li, Cara Diaz & Dev Rao") == [
        "Alice Chen",
        "Bo Li",
        "Cara Diaz",
        "Dev Rao",
    ]


def test_parse_students_from_booking_subject() -> None:
    students = parse_students(
        EmailContent(subject="Alice Chen and Bo Li has booked Trial class with Coach Amber"),
    )

    assert students.student_name == "Alice Chen and Bo Li"
    assert students.student_names == ["Alice Chen", "Bo Li"]


def test_parse_students_from_cancellation_body_and_subject() -> None:
    from_body = parse_students(
        EmailContent(text="Lesson for Ben Park has been cancelled for Ben Park."),
    )
    from_subject = parse_students(
        EmailContent(subject="Confirmation of cancellation of Trial class for Dana Ruiz"),
    )

    assert from_body.student_name == "Ben Park"
    assert from_body.student_names == ["Ben Park"]
    assert from_subject.student_name == "Dana Ruiz"


def test_parse_students_returns_empty_result_without_match() -> None:
    students = parse_students(EmailContent(subject="Hello", text="Nothing to see."))

    assert students.is_empty
    assert students.all_names() == []


def test_parse_change_details_reads_new_slot_and_coach() -> None:
    details = parse_change_details(
        "Confirmation: Alice Chen’s booking\n"
        "Your booking for Private lesson changed to 08-20-2030 at 3:00 PM to 4:00 PM with Coach Amber\n"
        "See you at the pool.",
    )

    assert details.student_name == "Alice Chen"
    assert details.course_name == "Private lesson"
    assert details.start == datetime(2030, 8, 20, 22, 0, tzinfo=UTC)
    assert details.end == datetime(2030, 8, 20, 23, 0, tzinfo=UTC)
    assert details.coach_hint == "Amber"


def test_parse_change_details_tolerates_unparseable_dates() -> None:
    details = parse_change_details(
        "Confirmation: Alice Chen's booking\nYour booking for Private lesson changed to August 20th at 3pm",
    )

    assert details.student_name == "Alice Chen"
    assert details.start is None
    assert details.end is None


def test_infer_lesson_type() -> None:
    assert infer_lesson_type("Alice Chen has booked Private Lesson", "") == "Private lesson"
    assert infer_lesson_type("Alice Chen has booked", None) == "Trial class"


def test_resolve_timezone_accepts_names_and_abbreviations() -> None:
    assert resolve_timezone("America/Los_Angeles") == LOS_ANGELES
    assert resolve_timezone("PDT") == LOS_ANGELES
    assert resolve_timezone("Eastern Time") == ZoneInfo("America/New_York")
    assert resolve_timezone("Mars/Base") is None
    assert resolve_timezone(None) is None
