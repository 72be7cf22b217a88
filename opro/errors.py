from __future__ import annotations

from typing import Optional


class OPROError(Exception):
    """Base class for every failure raised by the optimisation core."""


class GenerationFailure(OPROError):
    """The proposer exhausted its attempts or kept returning an unusable payload.

    No prompts are added to the step; callers may retry the generation.
    """


class GradingFailure(OPROError):
    """A single per-question grading call exhausted its attempts.

    The scorer never raises this past its own boundary: it is returned as a
    sentinel outcome and counted as an incorrect answer.
    """

    def __init__(self, question_index: int, cause: Optional[BaseException] = None) -> None:
        super().__init__(f"grading failed for question {question_index}: {cause}")
        self.question_index = question_index
        self.cause = cause


class ScoringFailure(OPROError):
    """A prompt could not be scored; it has been put back to ``pending``."""


class NotFoundFailure(OPROError):
    """A session, step or prompt id does not exist."""


class PreconditionFailure(OPROError):
    """An operation was attempted in a state that does not allow it."""


class IncompleteStepFailure(PreconditionFailure):
    """Advance was attempted before every prompt of the current step was scored."""


class StepNotEmptyFailure(PreconditionFailure):
    """Generate was attempted on a step that already holds prompts."""


class InvalidPromptStateFailure(PreconditionFailure):
    """The prompt is not in the state the operation requires."""


class InactiveSessionFailure(PreconditionFailure):
    """A mutating operation targeted a session that is not the active one."""


class ReplyError(OPROError):
    """A model reply was empty or did not match the requested structure."""
