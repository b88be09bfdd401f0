from __future__ import annotations

import base64
import binascii
import re
from collections.abc import Collection, Mapping
from dataclasses import dataclass, field
from typing import Any

from annotator.src.errors import SecretDecodeError

# Kubernetes Secret keys are limited to this alphabet, so any such
# ``$key$`` run inside a journaled original marks a substitution point.
_TOKEN_PATTERN = re.compile(r"\$[-._A-Za-z0-9]+\$")


def placeholder(key: str) -> str:
    """Return the literal token (``$key$``) substituted by the value of *key*."""
    return f"${key}$"


def _decode_data_value(key: str, value: Any) -> str:
    if isinstance(value, (bytes, bytearray)):
        raw = bytes(value)
    else:
        try:
            raw = base64.b64decode(str(value), validate=True)
        except (binascii.Error, ValueError) as exc:
            raise SecretDecodeError(f"Secret data key {key!r} is not valid base64") from exc
    try:
        return raw.decode("utf-8")
    except UnicodeDecodeError as exc:
        raise SecretDecodeError(f"Secret data key {key!r} is not valid UTF-8") from exc


def build_replacements(secret: Any) -> dict[str, str]:
    """Flatten a Secret into ``placeholder key -> replacement text``.

    ``data`` values arrive base64-encoded from the API and are decoded as
    UTF-8; ``string_data`` entries are inserted afterwards and win over
    ``data`` entries with the same key.  Any undecodable value raises
    :class:`SecretDecodeError` so a partial replacement set is never used.
    """
    replacements: dict[str, str] = {}

    data = getattr(secret, "data", None) or {}
    for key, value in data.items():
        replacements[key] = "" if value is None else _decode_data_value(key, value)

    string_data = getattr(secret, "string_data", None) or {}
    for key, value in string_data.items():
        replacements[key] = "" if value is None else str(value)

    return replacements


def render(template: str, replacements: Mapping[str, str]) -> tuple[str, int]:
    """Substitute every known placeholder in *template*, one key at a time.

    Keys are applied in ascending order and each one only rewrites text
    that is still part of the template, so when two tokens overlap the
    lower key wins.  Inserted replacement text is never scanned again, so
    a secret value that looks like a placeholder is emitted literally.

    Returns the rendered text and the number of tokens replaced.
    """
    # (text, replaced) pairs; only unreplaced segments are searched.
    segments: list[tuple[str, bool]] = [(template, False)]
    count = 0
    for key in sorted(replacements):
        if not key:
            continue
        token = placeholder(key)
        value = replacements[key]
        updated: list[tuple[str, bool]] = []
        for text, replaced in segments:
            if replaced or token not in text:
                updated.append((text, replaced))
                continue
            parts = text.split(token)
            count += len(parts) - 1
            for index, part in enumerate(parts):
                if index:
                    updated.append((value, True))
                updated.append((part, False))
        segments = updated

    if count == 0:
        return template, 0
    return "".join(text for text, _ in segments), count


def derives_from(original: str, value: str) -> bool:
    """Return True if *value* could be a rendering of the journaled *original*.

    Every placeholder in *original* is treated as a wildcard and the
    remaining literal text must match exactly.  A value that fails this
    check was rewritten by the ingress owner after the last substitution.

    Literal segments are matched greedily left to right with ``str.find``,
    without backtracking, so the cost stays bounded by the size of *value*.
    """
    literals = _TOKEN_PATTERN.split(original)
    if len(literals) == 1:
        return value == original

    head, *middle, tail = literals
    if len(head) + len(tail) > len(value):
        return False
    if not value.startswith(head) or not value.endswith(tail):
        return False

    cursor = len(head)
    end = len(value) - len(tail)
    for literal in middle:
        found = value.find(literal, cursor, end)
        if found < 0:
            return False
        cursor = found + len(literal)
    return True


@dataclass(frozen=True)
class AnnotationRecord:
    """One inspected annotation: its live value and its journaled original, if any."""

    key: str
    current: str
    original: str | None = None

    @property
    def base(self) -> str:
        """Text substitution operates on.

        The journaled original is preferred while the live value still
        derives from it, so rotations re-render the template rather than
        the previous output.  An original that is a bare placeholder matches
        any live value, so it keeps being rendered.
        """
        if self.original is not None and derives_from(self.original, self.current):
            return self.original
        return self.current


@dataclass(frozen=True)
class SubstitutionResult:
    """Outcome of one engine run.

    ``changed`` holds only annotations whose value must be updated and
    ``staged`` the journal entries recorded for them.  ``journal`` is the
    existing journal overlaid with ``staged``.
    """

    changed: dict[str, str] = field(default_factory=dict)
    staged: dict[str, str] = field(default_factory=dict)
    journal: dict[str, str] = field(default_factory=dict)

    @property
    def has_changes(self) -> bool:
        return bool(self.changed)


def build_records(
    annotations: Mapping[str, str | None],
    journal: Mapping[str, str],
    reserved: Collection[str],
) -> list[AnnotationRecord]:
    """Pair every non-reserved annotation with its journaled original, sorted by key."""
    return [
        AnnotationRecord(
            key=key,
            current="" if value is None else str(value),
            original=journal.get(key),
        )
        for key, value in sorted(annotations.items())
        if key not in reserved
    ]


def substitute_annotations(
    annotations: Mapping[str, str | None],
    journal: Mapping[str, str],
    replacements: Mapping[str, str],
    reserved: Collection[str],
) -> SubstitutionResult:
    """Compute annotation updates and the journal that accompanies them.

    Pure and side-effect free.  An annotation is staged only when at least
    one placeholder was replaced and the rendering differs from its live
    value; the journal records the pre-substitution text for each staged
    key.  Journal entries of untouched annotations are carried over as is.
    """
    changed: dict[str, str] = {}
    staged: dict[str, str] = {}

    for record in build_records(annotations, journal, reserved):
        base = record.base
        candidate, replaced = render(base, replacements)
        if replaced == 0 or candidate == record.current:
            continue
        changed[record.key] = candidate
        staged[record.key] = base

    if not changed:
        return SubstitutionResult(journal=dict(journal))

    merged = {key: value for key, value in journal.items() if key not in reserved}
    merged.update(staged)
    return SubstitutionResult(changed=changed, staged=staged, journal=merged)
