import pytest
from fastapi import HTTPException

from app.core.config import Settings
from app.schemas.coach import CoachProfileRequest
from app.services.appointment_repository import AppointmentRepository
from app.services.appointment_store import InMemoryAppointmentStore
from app.services.coach_service import CoachService, build_coach_aliases, build_hint_variants
from app.services.coach_store import InMemoryCoachStore


def _build_service(**overrides: object) -> CoachService:
    settings = Settings(data_store="memory", **overrides)
    return CoachService(
        settings,
        store=InMemoryCoachStore(),
        appointment_repository=AppointmentRepository(settings, store=InMemoryAppointmentStore()),
    )


def test_build_coach_aliases_deduplicates_case_insensitively() -> None:
    aliases = build_coach_aliases(
        "Amber",
        "amber@example.com",
        ["AMBER", "Coach Amber", " ", "coach amber"],
    )

    assert aliases == ["Amber", "amber@example.com", "Coach Amber"]


def test_build_coach_aliases_adds_email_local_part() -> None:
    assert build_coach_aliases("Jordan Smith", "jsmith@example.com") == [
        "Jordan Smith",
        "jsmith@example.com",
        "jsmith",
    ]


def test_build_hint_variants() -> None:
    assert build_hint_variants("CoachAmber") == ["CoachAmber", "Amber", "Coach CoachAmber", "Coach Amber"]
    assert build_hint_variants("Marcus Lee") == ["Marcus Lee", "Coach Marcus Lee", "MarcusLee"]


@pytest.mark.parametrize("hint", ["CoachAmber", "Coach Amber", "amber", "AMBER", "  Coach   amber "])
def test_resolve_coach_id_is_case_whitespace_and_prefix_insensitive(hint: str) -> None:
    service = _build_service()
    service.store.upsert_coach("coach-amber", email=None, display_name="Amber", aliases=["Amber"])
    service.store.upsert_coach("coach-jordan", email=None, display_name="Jordan", aliases=["Jordan"])

    assert service.resolve_coach_id(hint) == "coach-amber"


def test_resolve_coach_id_matches_multi_word_alias_without_spaces() -> None:
    service = _build_service()
    service.store.upsert_coach("coach-marcus", email=None, display_name="Marcus Lee", aliases=["Marcus Lee"])

    assert service.resolve_coach_id("MarcusLee") == "coach-marcus"


def test_resolve_coach_id_returns_none_for_unknown_or_blank_hint() -> None:
    service = _build_service()
    service.store.upsert_coach("coach-amber", email=None, display_name="Amber", aliases=["Amber"])

    assert service.resolve_coach_id("Zed") is None
    assert service.resolve_coach_id("   ") is None
    assert service.resolve_coach_id(None) is None


def test_resolve_coach_id_respects_scan_limit() -> None:
    service = _build_service(coach_scan_limit=1)
    service.store.upsert_coach("coach-jordan", email=None, display_name="Jordan", aliases=["Jordan"])
    service.store.upsert_coach("coach-amber", email=None, display_name="Amber", aliases=["Amber"])

    assert service.resolve_coach_id("Amber") == "coach-amber"
    assert service.resolve_coach_id("AMBER") is None


def test_upsert_profile_creates_and_refreshes_coach() -> None:
    service = _build_service()

    created = service.upsert_profile(
        "coach-amber",
        CoachProfileRequest(email="amber@example.com", display_name="Amber"),
    )
    refreshed = service.upsert_profile(
        "coach-amber",
        CoachProfileRequest(extra_aliases=["Amby"]),
    )

    assert created.aliases == ["Amber", "amber@example.com"]
    assert refreshed.email == "amber@example.com"
    assert refreshed.display_name == "Amber"
    assert refreshed.aliases == ["Amber", "amber@example.com", "Amby"]
    assert refreshed.created_at == created.created_at
    assert service.resolve_coach_id("Coach Amby") == "coach-amber"


def test_upsert_profile_rejects_blank_coach_id() -> None:
    service = _build_service()

    with pytest.raises(HTTPException) as exc_info:
        service.upsert_profile("  ", CoachProfileRequest(display_name="Amber"))

    assert exc_info.value.status_code == 422


def test_get_coach_returns_404_for_missing_coach() -> None:
    service = _build_service()

    with pytest.raises(HTTPException) as exc_info:
        service.get_coach("missing")

    assert exc_info.value.status_code == 404
