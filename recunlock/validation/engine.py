"""Validation engine.

Re-checks recommendations against elements observed on the live page and
classifies the result:

- all required elements present  -> verified_complete (100%)
- some present                   -> partial_progress (floor(found/checked * 100))
- none present, was completed    -> regressed
- none present, never completed  -> not_implemented
- nothing declared to check      -> pending_validation (manual review)

Every check appends one history row. The engine only proposes a state
change; ``validate`` applies it through the record store and reports
``applied = False`` when the transition table refuses it.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from recunlock.db.models import RecommendationModel, ValidationHistoryModel
from recunlock.errors import InvalidTransition
from recunlock.models import UnlockState, ValidationOutcome, ValidationStatus
from recunlock.store.repository import RecommendationStore
from recunlock.utils import utcnow

logger = logging.getLogger(__name__)

_COMPLETED_STATES = frozenset({UnlockState.COMPLETED, UnlockState.VERIFIED})


@dataclass(slots=True)
class Classification:
    status: ValidationStatus
    completion_percentage: int
    found: list[str]
    missing: list[str]


def _key(element: str) -> str:
    return element.strip().casefold()


def normalize_findings(live_findings: Any) -> set[str]:
    """Coerce crawler output into a set of element keys.

    Malformed or ambiguous input degrades to "not found" instead of failing:
    mappings count only keys with truthy values, non-string entries are
    dropped, and anything unrecognised becomes an empty set.
    """
    if live_findings is None:
        return set()
    if isinstance(live_findings, str):
        return {_key(live_findings)} if live_findings.strip() else set()
    if isinstance(live_findings, Mapping):
        return {
            _key(name)
            for name, present in live_findings.items()
            if isinstance(name, str) and name.strip() and present
        }
    if isinstance(live_findings, Iterable):
        return {_key(item) for item in live_findings if isinstance(item, str) and item.strip()}

    logger.debug(f"Ignoring unrecognised live findings of type {type(live_findings).__name__}")
    return set()


def classify(
    required: Iterable[str],
    live_findings: Any,
    was_completed: bool,
) -> Classification:
    required = [element for element in required if isinstance(element, str) and element.strip()]
    observed = normalize_findings(live_findings)

    found = [element for element in required if _key(element) in observed]
    missing = [element for element in required if _key(element) not in observed]

    if not required:
        return Classification(ValidationStatus.PENDING_VALIDATION, 0, [], [])
    if not missing:
        return Classification(ValidationStatus.VERIFIED_COMPLETE, 100, found, missing)
    if found:
        percentage = (len(found) * 100) // len(required)
        return Classification(ValidationStatus.PARTIAL_PROGRESS, percentage, found, missing)
    if was_completed:
        return Classification(ValidationStatus.REGRESSED, 0, found, missing)
    return Classification(ValidationStatus.NOT_IMPLEMENTED, 0, found, missing)


def propose_state(current: UnlockState, status: ValidationStatus) -> UnlockState | None:
    """State the record should move to after a check, or None to stay put."""
    if status == ValidationStatus.VERIFIED_COMPLETE:
        if current in (UnlockState.ACTIVE, UnlockState.IN_PROGRESS, UnlockState.LOCKED):
            # Detected before the user marked it; confirmation comes on a later check
            return UnlockState.COMPLETED
        if current == UnlockState.VERIFIED:
            return None
        return UnlockState.VERIFIED
    if status in (ValidationStatus.PARTIAL_PROGRESS, ValidationStatus.REGRESSED):
        return None if current == UnlockState.IN_PROGRESS else UnlockState.IN_PROGRESS
    return None


def _notes(classification: Classification) -> str:
    status = classification.status
    if status == ValidationStatus.VERIFIED_COMPLETE:
        return f"Implementation verified: {len(classification.found)} element(s) present"
    if status == ValidationStatus.PARTIAL_PROGRESS:
        return (
            f"Partial implementation ({classification.completion_percentage}%): "
            f"missing {', '.join(classification.missing[:3])}"
        )
    if status == ValidationStatus.REGRESSED:
        return "Previously completed, but no required elements are present any more"
    if status == ValidationStatus.NOT_IMPLEMENTED:
        return "No required elements detected"
    return "Nothing declared to check automatically; manual review required"


class ValidationEngine:
    """Validates recommendations and records the audit trail."""

    def __init__(self, session: AsyncSession, store: RecommendationStore):
        self.session = session
        self.store = store

    def check(self, record: RecommendationModel, live_findings: Any) -> ValidationOutcome:
        """Classify one record without writing anything."""
        current = UnlockState(record.unlock_state)
        was_completed = current in _COMPLETED_STATES or record.marked_complete_at is not None
        classification = classify(record.checked_elements or [], live_findings, was_completed)

        return ValidationOutcome(
            recommendation_id=record.id,
            outcome=classification.status,
            completion_percentage=classification.completion_percentage,
            checked_elements=list(record.checked_elements or []),
            found_elements=classification.found,
            missing_elements=classification.missing,
            previous_state=current,
            proposed_state=propose_state(current, classification.status),
            notes=_notes(classification),
        )

    async def validate(
        self,
        recommendation_id: int,
        live_findings: Any,
        now: datetime | None = None,
    ) -> ValidationOutcome:
        """Check, record history, and apply the proposed transition.

        Raises:
            NotFound: If the recommendation id is unknown
        """
        now = now or utcnow()
        record = await self.store.get(recommendation_id)
        outcome = self.check(record, live_findings)

        if outcome.proposed_state is not None:
            try:
                await self.store.update_state(record, outcome.proposed_state, now)
                outcome.applied = True
            except InvalidTransition as exc:
                logger.info(f"Validation of {record.id} not applied: {exc}")

        if outcome.previous_state != UnlockState.SKIPPED:
            self._update_metadata(record, outcome, now)

        entry = ValidationHistoryModel(
            recommendation_id=record.id,
            scan_id=record.scan_id,
            user_id=record.user_id,
            checked_elements=outcome.checked_elements,
            found_elements=outcome.found_elements,
            missing_elements=outcome.missing_elements,
            outcome=outcome.outcome,
            completion_percentage=outcome.completion_percentage,
            state_before=outcome.previous_state,
            proposed_state=outcome.proposed_state,
            applied=outcome.applied,
            notes=outcome.notes,
            checked_at=now,
        )
        self.session.add(entry)
        await self.session.flush()
        outcome.history_id = entry.id

        logger.info(
            f"Validated recommendation {record.id}: {outcome.outcome.value} "
            f"({outcome.completion_percentage}%), applied={outcome.applied}"
        )
        return outcome

    @staticmethod
    def _update_metadata(
        record: RecommendationModel, outcome: ValidationOutcome, now: datetime
    ) -> None:
        record.validation_status = outcome.outcome
        record.last_validated_at = now
        if outcome.outcome != ValidationStatus.PENDING_VALIDATION:
            record.progress_percentage = outcome.completion_percentage
