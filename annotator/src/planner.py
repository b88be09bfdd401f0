from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from annotator.src.journal import encode_journal
from annotator.src.substitution import SubstitutionResult


@dataclass(frozen=True)
class PatchPlan:
    """Annotation updates to submit as one merge patch.

    ``annotations`` contains the changed keys plus the state annotation
    carrying the serialized journal; nothing else is touched.
    """

    annotations: dict[str, str]

    @property
    def body(self) -> dict[str, Any]:
        return {"metadata": {"annotations": dict(self.annotations)}}


def plan_patch(result: SubstitutionResult, state_key: str) -> PatchPlan | None:
    """Return the patch for *result*, or ``None`` when nothing changed and no call must be made."""
    if not result.has_changes:
        return None

    annotations = dict(result.changed)
    annotations[state_key] = encode_journal(result.journal)
    return PatchPlan(annotations=annotations)
