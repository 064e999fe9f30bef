"""Error taxonomy for the flow engine and the response pipeline."""

from typing import Optional


class FlowError(Exception):
    """Base class for flow engine errors."""


class StaleTransition(FlowError):
    """The caller's view of the participant's stage is out of date."""

    def __init__(self, participant_id: str, expected: str, actual: str):
        self.participant_id = participant_id
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"Stale transition for {participant_id}: caller saw {expected}, current is {actual}"
        )


class TerminalStage(FlowError):
    """No transition exists out of the completed stage."""


class NotPermitted(FlowError):
    """Operation is only available in a development configuration."""


class ParticipantNotFound(FlowError):
    """No flow record exists yet for the participant."""

    def __init__(self, participant_id: str):
        self.participant_id = participant_id
        super().__init__(f"No flow record for participant {participant_id}")


class ResetRequired(FlowError):
    """Guard mismatch; resolved by resetting the flow, never propagated past the guard."""

    def __init__(self, required: str, actual: str):
        self.required = required
        self.actual = actual
        super().__init__(f"Expected stage {required}, got {actual}")


class PersistenceError(FlowError):
    """The backing store did not acknowledge a write."""


class StageNotReached(FlowError):
    """A record was submitted before the participant reached the stage that owns it."""


class GenerationFailed(Exception):
    """The model endpoint failed or answered with a non-success status."""

    def __init__(self, status: Optional[int], message: str):
        self.status = status
        self.message = message
        super().__init__(f"Generation failed ({status if status is not None else 'no status'}): {message}")
