"""
scenario_assigner.py - Deterministic experimental condition assignment

The condition is a pure function of the participant identifier: SHA-256 of
the identifier, first 8 bytes read as an unsigned integer, reduced modulo
the number of conditions. No randomness and no stored counter, so the same
identifier lands in the same condition across restarts.

A development-only override map lets a researcher force a condition for a
single identifier while testing a scenario.
"""

import hashlib
import logging
from typing import Dict, List, Optional

from tutorlab.config import settings
from tutorlab.errors import NotPermitted
from tutorlab.models.flow import CONDITIONS, Condition

logger = logging.getLogger(__name__)

SCENARIO_DESCRIPTIONS = {
    Condition.GROUP: "User + Alice (arithmetic errors) + Charlie (concept errors)",
    Condition.MULTI: "User + Bob (tutor) + one error-prone agent",
    Condition.SINGLE: "User + Bob (tutor) only",
    Condition.SOLO: "User works alone",
}


def hash_condition(participant_id: str) -> Condition:
    """Map any identifier to a condition. Never raises."""
    raw = str(participant_id).encode("utf-8", errors="surrogatepass")
    digest = hashlib.sha256(raw).digest()
    bucket = int.from_bytes(digest[:8], "big") % len(CONDITIONS)
    return CONDITIONS[bucket]


class ScenarioAssigner:
    def __init__(self, development: Optional[bool] = None):
        if development is None:
            development = settings.scenario_override_enabled
        self.development = development
        self._overrides: Dict[str, Condition] = {}

    def assign(self, participant_id: str) -> Condition:
        forced = self._overrides.get(participant_id)
        if forced is not None:
            return forced
        return hash_condition(participant_id)

    def override(self, participant_id: str, condition: Condition) -> None:
        if not self.development:
            raise NotPermitted("Scenario override is only available in development")
        logger.warning(f"DEV override: participant {participant_id} forced to {condition.value}")
        self._overrides[participant_id] = Condition(condition)

    def clear_override(self, participant_id: str) -> None:
        self._overrides.pop(participant_id, None)

    def scenarios(self) -> List[dict]:
        return [
            {"value": c.value, "label": c.value.capitalize(), "description": SCENARIO_DESCRIPTIONS[c]}
            for c in CONDITIONS
        ]
