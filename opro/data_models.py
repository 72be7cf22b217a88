from __future__ import annotations

import time
import uuid
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field

from .config import OPROConfig


def now_ms() -> int:
    return int(time.time() * 1000)


def new_id() -> str:
    return uuid.uuid4().hex


class QuestionAnswer(BaseModel):
    """A benchmark question with its numeric gold answer."""

    model_config = ConfigDict(frozen=True)

    question: str
    gold_answer: float


class PromptState(str, Enum):
    PENDING = "pending"
    SCORING = "scoring"
    SCORED = "scored"


class Prompt(BaseModel):
    """
    A candidate instruction under evaluation.

    ``score`` stays ``None`` until a scoring attempt completes; once the prompt
    is ``scored`` it holds the accuracy in ``[0, 100]``. ``id``, ``text`` and
    ``created_at`` are fixed at creation.
    """

    id: str = Field(default_factory=new_id, frozen=True)
    text: str = Field(frozen=True)
    state: PromptState = PromptState.PENDING
    score: Optional[float] = None
    created_at: int = Field(default_factory=now_ms, frozen=True)

    @property
    def is_scored(self) -> bool:
        return self.state is PromptState.SCORED and self.score is not None


class Step(BaseModel):
    step_number: int = Field(ge=0)
    prompts: List[Prompt] = Field(default_factory=list)

    def pending(self) -> List[Prompt]:
        return [p for p in self.prompts if p.state is PromptState.PENDING]

    @property
    def complete(self) -> bool:
        return bool(self.prompts) and all(p.state is PromptState.SCORED for p in self.prompts)


class Session(BaseModel):
    """
    One optimisation run: its configuration and the ordered list of steps.

    Invariants kept by the orchestrator: ``steps[i].step_number == i`` and
    ``current_step == steps[-1].step_number``.
    """

    id: str = Field(default_factory=new_id)
    name: str
    current_step: int = 0
    steps: List[Step] = Field(default_factory=lambda: [Step(step_number=0)])
    config: OPROConfig
    created_at: int = Field(default_factory=now_ms)
    updated_at: int = Field(default_factory=now_ms)

    def step(self, step_number: int) -> Optional[Step]:
        for step in self.steps:
            if step.step_number == step_number:
                return step
        return None

    def active_step(self) -> Optional[Step]:
        return self.step(self.current_step)

    def find_prompt(self, prompt_id: str) -> Optional[Prompt]:
        for step in self.steps:
            for prompt in step.prompts:
                if prompt.id == prompt_id:
                    return prompt
        return None

    def all_prompts(self) -> List[Prompt]:
        return [p for step in self.steps for p in step.prompts]

    def touch(self) -> None:
        self.updated_at = now_ms()
