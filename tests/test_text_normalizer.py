from app.services.text_normalizer import canon, canon_alias, collapse_whitespace, strip_html


def test_strip_html_drops_style_and_keeps_block_lines() -> None:
    html = (
        "<style>p { color: red; }</style>"
        "<p>Hello&nbsp;there</p>"
        "<div>Lesson&ndash;time   <b>2:00 PM</b></div>"
        "<script>window.track()</script>"
    )

    assert strip_html(html) == "Hello there\nLesson–time 2:00 PM"


def test_strip_html_ignores_non_string_values() -> None:
    assert strip_html(None) == ""
    assert strip_html(42) == ""


def test_canon_lowercases_and_collapses_whitespace() -> None:
    assert canon("  Alice   CHEN \n") == "alice chen"
    assert canon(None) == ""


def test_canon_alias_strips_coach_prefix() -> None:
    assert canon_alias("Coach  Amber") == "amber"
    assert canon_alias("CoachAmber") == "amber"
    assert canon_alias("AMBER") == "amber"


def test_collapse_whitespace_keeps_case() -> None:
    assert collapse_whitespace("  Private \t lesson ") == "Private lesson"


def test_strip_html_decodes_numeric_and_named_entities() -> None:
    html = "<p>Alice&#8217;s lesson &mdash; 2:00&#160;PM</p><p>Fish &amp; chips &eacute;t&eacute;</p>"

    assert strip_html(html) == "Alice’s lesson — 2:00 PM\nFish & chips été"
