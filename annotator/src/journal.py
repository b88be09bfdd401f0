from __future__ import annotations

import json
import logging
from collections.abc import Collection, Mapping

LOGGER = logging.getLogger(__name__)


def decode_journal(raw: str | None, reserved: Collection[str] = ()) -> dict[str, str]:
    """Decode the state annotation into ``annotation key -> original value``.

    A missing, malformed or non-object payload yields an empty journal so a
    corrupted state annotation never blocks reconciliation.  Entries for
    reserved keys and non-string values are dropped.
    """
    if not raw:
        return {}

    try:
        payload = json.loads(raw)
    except ValueError:
        LOGGER.warning("Ignoring malformed annotation journal (%d bytes)", len(raw))
        return {}

    if not isinstance(payload, dict):
        LOGGER.warning(
            "Ignoring annotation journal that is a JSON %s, not an object",
            type(payload).__name__,
        )
        return {}

    return {
        key: value
        for key, value in payload.items()
        if isinstance(value, str) and key not in reserved
    }


def encode_journal(journal: Mapping[str, str]) -> str:
    """Serialize the journal as compact JSON with sorted keys.

    Identical journals always encode to identical text, so an unchanged
    journal never shows up as a diff on the ingress.
    """
    return json.dumps(dict(journal), sort_keys=True, separators=(",", ":"), ensure_ascii=False)
