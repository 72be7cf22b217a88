from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Any, Awaitable, Dict, List, Optional, Sequence, Union

from loguru import logger
from tqdm import tqdm

from .clients import Completion, ModelClient
from .config import OPROSettings
from .constants import MAX_K, MIN_K, PROPOSER_MAX_TOKENS, SCORER_MAX_TOKENS
from .data_models import QuestionAnswer
from .errors import GenerationFailure, GradingFailure, ReplyError
from .metrics import USAGE
from .replies import ANSWER_SCHEMA, TEXTS_SCHEMA, expect_answer, expect_texts
from .utils import preview, retry_on_exception, strip_delimiters


async def _with_timeout(call: Awaitable[Completion], timeout: Optional[float]) -> Completion:
    if timeout is None:
        return await call
    return await asyncio.wait_for(call, timeout)


# ─────────────────────────── ProposerEngine ──────────────────────────────
class ProposerEngine:
    """
    ProposerEngine asks the optimizer model for new candidate instructions.

    A single structured-output request is issued per attempt. Transport errors,
    empty bodies and malformed or empty ``texts`` arrays are all retried, up to
    ``settings.proposer_max_attempts`` attempts in total.

    Args:
        client (ModelClient): Handle used to reach the model.
        settings (OPROSettings): Retry budget, delays and timeout.
    """

    role = "optimizer"

    def __init__(self, client: ModelClient, settings: OPROSettings) -> None:
        self.client = client
        self.settings = settings

    async def _propose_once(self, meta_prompt: str, k: int, temperature: float, model: str) -> List[str]:
        completion = await _with_timeout(
            self.client.complete_json(
                meta_prompt,
                model=model,
                temperature=temperature,
                schema=TEXTS_SCHEMA,
                max_tokens=PROPOSER_MAX_TOKENS,
            ),
            self.settings.request_timeout,
        )
        USAGE.record_request(
            self.role, model, completion.prompt_tokens, completion.completion_tokens
        )
        texts = [strip_delimiters(t) for t in expect_texts(completion.text)[:k]]
        texts = [t for t in texts if t]
        if not texts:
            raise ReplyError("Invalid response format: every candidate was blank")
        return texts

    async def propose(self, meta_prompt: str, k: int, temperature: float, model: str) -> List[str]:
        """
        Returns at most ``k`` cleaned candidate texts.

        Raises:
            ValueError: If ``meta_prompt`` is empty or ``k`` is outside ``[1, 16]``.
            GenerationFailure: When every attempt failed; the last error is chained.
        """
        if not meta_prompt or not isinstance(meta_prompt, str):
            raise ValueError("meta_prompt must be a non-empty string")
        if not MIN_K <= k <= MAX_K:
            raise ValueError(f"k must be between {MIN_K} and {MAX_K}")

        attempts = self.settings.proposer_max_attempts
        call = retry_on_exception(
            max_attempts=attempts,
            initial_delay=self.settings.proposer_retry_delay,
            exceptions=(Exception,),
        )(self._propose_once)
        try:
            texts = await call(meta_prompt, k, temperature, model)
        except Exception as exc:
            raise GenerationFailure(
                f"Failed to generate prompts after {attempts} attempts: {exc}"
            ) from exc

        logger.bind(model=model, count=len(texts), requested=k).info("Generated candidates")
        return texts


# ─────────────────────────── ScorerEngine ────────────────────────────────
@dataclass(frozen=True)
class QuestionOutcome:
    index: int
    gold_answer: float
    answer: Optional[float]
    correct: bool
    failure: Optional[GradingFailure] = None

    @property
    def failed(self) -> bool:
        return self.failure is not None


@dataclass
class ScoreReport:
    """Result of grading one candidate against a question set."""

    correct: int
    total: int
    outcomes: List[QuestionOutcome] = field(default_factory=list)

    @property
    def accuracy(self) -> float:
        return 100.0 * self.correct / self.total

    @property
    def failed(self) -> int:
        return sum(1 for o in self.outcomes if o.failed)

    @property
    def incorrect(self) -> int:
        return self.total - self.correct

    def summary(self) -> Dict[str, Any]:
        return {
            "accuracy": round(self.accuracy, 2),
            "correct": self.correct,
            "incorrect": self.incorrect,
            "failed": self.failed,
            "total": self.total,
        }


class ScorerEngine:
    """
    ScorerEngine measures the accuracy of one candidate instruction.

    Every question is graded by its own model call and all calls run
    concurrently; the only bound is the size of the question set. Each call has
    its own retry budget. A call that runs out of attempts resolves to a
    :class:`GradingFailure` sentinel which counts as an incorrect answer, so one
    failure never cancels its siblings. The engine waits for every call to
    settle before computing ``100 * correct / total``.

    Repeated scoring of the same candidate may differ: the grader samples.

    Args:
        client (ModelClient): Handle used to reach the grader model.
        settings (OPROSettings): Retry budget, delays, request stagger, progress flag.
    """

    role = "scorer"

    def __init__(self, client: ModelClient, settings: OPROSettings) -> None:
        self.client = client
        self.settings = settings

    async def _grade_once(self, full_prompt: str, temperature: float, model: str) -> float:
        completion = await _with_timeout(
            self.client.complete_json(
                full_prompt,
                model=model,
                temperature=temperature,
                schema=ANSWER_SCHEMA,
                max_tokens=SCORER_MAX_TOKENS,
            ),
            self.settings.request_timeout,
        )
        USAGE.record_request(
            self.role, model, completion.prompt_tokens, completion.completion_tokens
        )
        return expect_answer(completion.text)

    async def grade(
        self, index: int, full_prompt: str, temperature: float, model: str
    ) -> Union[float, GradingFailure]:
        call = retry_on_exception(
            max_attempts=self.settings.scorer_max_attempts,
            initial_delay=self.settings.scorer_retry_delay,
            exceptions=(Exception,),
        )(self._grade_once)
        try:
            return await call(full_prompt, temperature, model)
        except Exception as exc:
            return GradingFailure(index, exc)

    async def _evaluate_question(
        self,
        index: int,
        candidate: str,
        qa: QuestionAnswer,
        temperature: float,
        model: str,
        bar: tqdm,
    ) -> QuestionOutcome:
        if self.settings.request_stagger:
            await asyncio.sleep(index * self.settings.request_stagger)
        result = await self.grade(index, f"{candidate}\n\n{qa.question}", temperature, model)

        if isinstance(result, GradingFailure):
            outcome = QuestionOutcome(index, qa.gold_answer, None, False, result)
        else:
            outcome = QuestionOutcome(index, qa.gold_answer, result, result == qa.gold_answer)
        logger.bind(question=index, answer=outcome.answer, gold=qa.gold_answer).debug(
            "Graded question: {}", "correct" if outcome.correct else "incorrect"
        )
        USAGE.record_outcome(outcome.correct)
        bar.update(1)
        return outcome

    async def evaluate(
        self,
        candidate: str,
        questions: Sequence[QuestionAnswer],
        temperature: float,
        model: str,
    ) -> ScoreReport:
        """
        Grades ``candidate`` against every question and returns the full report.

        Raises:
            ValueError: If ``candidate`` is empty or ``questions`` is empty.
        """
        if not candidate or not isinstance(candidate, str):
            raise ValueError("candidate must be a non-empty string")
        if not questions:
            raise ValueError("questions must be a non-empty sequence")

        log = logger.bind(model=model, candidate=preview(candidate))
        log.info("Scoring candidate against {} questions", len(questions))
        with tqdm(
            total=len(questions),
            desc=f"Score {preview(candidate, 20)}",
            disable=not self.settings.show_progress,
            leave=False,
        ) as bar:
            outcomes = await asyncio.gather(
                *(
                    self._evaluate_question(i, candidate, qa, temperature, model, bar)
                    for i, qa in enumerate(questions)
                )
            )

        report = ScoreReport(
            correct=sum(1 for o in outcomes if o.correct),
            total=len(questions),
            outcomes=list(outcomes),
        )
        log.bind(**report.summary()).info("Scoring complete: {:.2f}%", report.accuracy)
        return report

    async def score(
        self,
        candidate: str,
        questions: Sequence[QuestionAnswer],
        temperature: float,
        model: str,
    ) -> float:
        return (await self.evaluate(candidate, questions, temperature, model)).accuracy
