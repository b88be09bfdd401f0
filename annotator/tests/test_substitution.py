from __future__ import annotations

import base64
from types import SimpleNamespace

import pytest

from annotator.src.config import AnnotationKeys
from annotator.src.errors import SecretDecodeError
from annotator.src.substitution import (
    AnnotationRecord,
    build_records,
    build_replacements,
    derives_from,
    render,
    substitute_annotations,
)

KEYS = AnnotationKeys.for_prefix("kirillorlov.pro")
RESERVED = KEYS.reserved


def b64(value: str | bytes) -> str:
    raw = value.encode("utf-8") if isinstance(value, str) else value
    return base64.b64encode(raw).decode("ascii")


def make_secret(
    data: dict[str, str] | None = None,
    string_data: dict[str, str] | None = None,
) -> SimpleNamespace:
    return SimpleNamespace(data=data, string_data=string_data)


# ---------------------------------------------------------------------------
# Replacement set
# ---------------------------------------------------------------------------


def test_build_replacements_decodes_base64_data() -> None:
    secret = make_secret(data={"FOO": b64("bar"), "GREETING": b64("héllo")})

    assert build_replacements(secret) == {"FOO": "bar", "GREETING": "héllo"}


def test_string_data_overrides_data_for_same_key() -> None:
    secret = make_secret(
        data={"FOO": b64("from-data"), "ONLY_DATA": b64("x")},
        string_data={"FOO": "from-string-data", "ONLY_STRING": "y"},
    )

    assert build_replacements(secret) == {
        "FOO": "from-string-data",
        "ONLY_DATA": "x",
        "ONLY_STRING": "y",
    }


def test_build_replacements_accepts_raw_bytes() -> None:
    secret = make_secret(data={"FOO": b"bar"})  # type: ignore[dict-item]

    assert build_replacements(secret) == {"FOO": "bar"}


def test_build_replacements_empty_secret() -> None:
    assert build_replacements(make_secret()) == {}
    assert build_replacements(SimpleNamespace()) == {}


def test_non_utf8_data_aborts() -> None:
    secret = make_secret(data={"GOOD": b64("ok"), "BAD": b64(b"\xff\xfe\xfa")})

    with pytest.raises(SecretDecodeError, match="BAD"):
        build_replacements(secret)


def test_invalid_base64_data_aborts() -> None:
    secret = make_secret(data={"BAD": "not base64!!"})

    with pytest.raises(SecretDecodeError, match="base64"):
        build_replacements(secret)


# ---------------------------------------------------------------------------
# Rendering
# ---------------------------------------------------------------------------


def test_render_replaces_every_occurrence() -> None:
    rendered, count = render("$FOO$/$FOO$", {"FOO": "bar"})

    assert rendered == "bar/bar"
    assert count == 2


def test_render_multiple_placeholders() -> None:
    rendered, count = render("$A$-$B$", {"A": "1", "B": "2"})

    assert rendered == "1-2"
    assert count == 2


def test_render_does_not_rescan_replacement_text() -> None:
    rendered, _ = render("x=$A$", {"A": "$B$", "B": "injected"})

    assert rendered == "x=$B$"


def test_render_leaves_unknown_placeholders_alone() -> None:
    rendered, count = render("$MISSING$ and $FOO$", {"FOO": "bar"})

    assert rendered == "$MISSING$ and bar"
    assert count == 1


def test_render_without_placeholders_is_identity() -> None:
    assert render("plain text $ with dollars", {"FOO": "bar"}) == (
        "plain text $ with dollars",
        0,
    )


def test_render_is_deterministic_for_adjacent_tokens() -> None:
    replacements = {"A": "1", "B": "2"}

    first = render("$A$B$", replacements)
    second = render("$A$B$", dict(reversed(list(replacements.items()))))

    assert first == second == ("1B$", 1)


def test_render_overlapping_tokens_lower_key_wins() -> None:
    assert render("x$B$A$", {"A": "1", "B": "2"}) == ("x$B1", 1)
    assert render("x$B$A$", {"B": "2"}) == ("x2A$", 1)


def test_derives_from_matches_rendered_output() -> None:
    assert derives_from("prefix-$FOO$-suffix", "prefix-bar-suffix")
    assert derives_from("prefix-$FOO$-suffix", "prefix--suffix")
    assert derives_from("prefix-$FOO$-suffix", "prefix-$FOO$-suffix")
    assert not derives_from("prefix-$FOO$-suffix", "something else")
    assert not derives_from("no placeholders", "no placeholders!")


def test_derives_from_handles_many_placeholders() -> None:
    assert derives_from("$A$:$B$/$C$", "1:2:3/4")
    assert derives_from("$A$$B$-end", "-end")
    assert not derives_from("ab$X$ba", "aba")
    assert not derives_from("$A$:$B$/$C$", "1/2:3")


def test_derives_from_mismatch_with_many_placeholders_returns_quickly() -> None:
    original = "$a$-" * 40 + "END"

    assert not derives_from(original, "-" * 5000)
    assert derives_from(original, "x-" * 40 + "END")

    result = substitute_annotations(
        {"example": "-" * 5000}, {"example": original}, {"a": "x"}, RESERVED
    )
    assert not result.has_changes


def test_record_base_prefers_journal_while_value_derives_from_it() -> None:
    rendered = AnnotationRecord(key="k", current="a-old-b", original="a-$X$-b")
    rewritten = AnnotationRecord(key="k", current="c-$X$", original="a-$X$-b")
    fresh = AnnotationRecord(key="k", current="c-$X$")

    assert rendered.base == "a-$X$-b"
    assert rewritten.base == "c-$X$"
    assert fresh.base == "c-$X$"


def test_build_records_skips_reserved_and_sorts() -> None:
    annotations = {
        "z": "1",
        KEYS.secret_name: "creds",
        KEYS.state: "{}",
        "kubectl.kubernetes.io/last-applied-configuration": "{}",
        "a": None,
    }

    records = build_records(annotations, {"z": "$Z$"}, RESERVED)

    assert [r.key for r in records] == ["a", "z"]
    assert records[0].current == ""
    assert records[1].original == "$Z$"


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------


def test_basic_substitution_stages_value_and_journal() -> None:
    annotations = {"example": "prefix-$FOO$-suffix", KEYS.secret_name: "creds"}

    result = substitute_annotations(annotations, {}, {"FOO": "bar"}, RESERVED)

    assert result.has_changes
    assert result.changed == {"example": "prefix-bar-suffix"}
    assert result.journal == {"example": "prefix-$FOO$-suffix"}


def test_rerun_with_same_secret_has_no_changes() -> None:
    annotations = {"example": "prefix-bar-suffix"}
    journal = {"example": "prefix-$FOO$-suffix"}

    result = substitute_annotations(annotations, journal, {"FOO": "bar"}, RESERVED)

    assert not result.has_changes
    assert result.journal == journal


def test_rotation_renders_from_original() -> None:
    annotations = {"example": "prefix-bar-suffix"}
    journal = {"example": "prefix-$FOO$-suffix"}

    result = substitute_annotations(annotations, journal, {"FOO": "baz"}, RESERVED)

    assert result.changed == {"example": "prefix-baz-suffix"}
    assert result.journal == {"example": "prefix-$FOO$-suffix"}


def test_replacement_resembling_placeholder_does_not_compound() -> None:
    tricky = {"FOO": "$BAR$", "BAR": "x"}

    first = substitute_annotations({"example": "v=$FOO$"}, {}, tricky, RESERVED)
    assert first.changed == {"example": "v=$BAR$"}

    second = substitute_annotations({"example": "v=$BAR$"}, first.journal, tricky, RESERVED)
    assert not second.has_changes

    rotated = substitute_annotations(
        {"example": "v=$BAR$"}, first.journal, {"FOO": "new", "BAR": "x"}, RESERVED
    )
    assert rotated.changed == {"example": "v=new"}


def test_annotation_without_placeholder_is_untouched() -> None:
    annotations = {"plain": "no tokens here", "dollar": "costs $5"}

    result = substitute_annotations(annotations, {}, {"FOO": "bar"}, RESERVED)

    assert not result.has_changes
    assert result.journal == {}


def test_reserved_annotations_are_never_substituted() -> None:
    annotations = {
        KEYS.secret_name: "$FOO$",
        KEYS.state: '{"x":"$FOO$"}',
        "kubectl.kubernetes.io/last-applied-configuration": '{"a":"$FOO$"}',
    }

    result = substitute_annotations(annotations, {}, {"FOO": "bar"}, RESERVED)

    assert not result.has_changes


def test_multiple_placeholders_in_one_pass() -> None:
    result = substitute_annotations({"pair": "$A$-$B$"}, {}, {"A": "1", "B": "2"}, RESERVED)

    assert result.changed == {"pair": "1-2"}
    assert result.journal == {"pair": "$A$-$B$"}


def test_staged_entries_are_merged_with_existing_journal() -> None:
    annotations = {"first": "one", "second": "$B$"}
    journal = {"first": "$A$"}

    result = substitute_annotations(annotations, journal, {"A": "one", "B": "two"}, RESERVED)

    assert result.changed == {"second": "two"}
    assert result.staged == {"second": "$B$"}
    assert result.journal == {"first": "$A$", "second": "$B$"}


def test_owner_rewrite_becomes_new_original() -> None:
    annotations = {"example": "other-$FOO$"}
    journal = {"example": "prefix-$FOO$-suffix"}

    result = substitute_annotations(annotations, journal, {"FOO": "bar"}, RESERVED)

    assert result.changed == {"example": "other-bar"}
    assert result.journal == {"example": "other-$FOO$"}


def test_bare_placeholder_original_keeps_rendering_over_plain_text() -> None:
    annotations = {"example": "hand-written value"}
    journal = {"example": "$FOO$"}

    result = substitute_annotations(annotations, journal, {"FOO": "bar"}, RESERVED)

    assert result.changed == {"example": "bar"}
    assert result.journal == {"example": "$FOO$"}


def test_removed_placeholder_keeps_stale_journal_entry() -> None:
    annotations = {"example": "hard-coded value"}
    journal = {"example": "prefix-$FOO$-suffix"}

    result = substitute_annotations(annotations, journal, {"FOO": "bar"}, RESERVED)

    assert not result.has_changes
    assert result.journal == journal


def test_secret_key_removed_leaves_annotation_alone() -> None:
    annotations = {"example": "prefix-bar-suffix"}
    journal = {"example": "prefix-$FOO$-suffix"}

    result = substitute_annotations(annotations, journal, {"OTHER": "x"}, RESERVED)

    assert not result.has_changes
