from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Sequence, Tuple, TypeVar

from loguru import logger

from .clients import ModelClient
from .config import OPROConfig, OPROSettings
from .data_models import Prompt, PromptState, QuestionAnswer, Session, Step
from .engines import ProposerEngine, ScoreReport, ScorerEngine
from .errors import (
    IncompleteStepFailure,
    InactiveSessionFailure,
    InvalidPromptStateFailure,
    NotFoundFailure,
    PreconditionFailure,
    ScoringFailure,
    StepNotEmptyFailure,
)
from .meta_prompt import MetaPromptSynthesizer
from .store import SessionStore
from .utils import Sampler, preview

T = TypeVar("T")


@dataclass(frozen=True)
class _Ticket:
    """Identifies the activation an asynchronous operation was launched under."""

    session_id: str
    epoch: int


@dataclass
class BatchResult:
    session_id: str
    scored: Dict[str, float] = field(default_factory=dict)
    failed: Dict[str, str] = field(default_factory=dict)
    discarded: List[str] = field(default_factory=list)

    @property
    def members(self) -> List[str]:
        return [*self.scored, *self.failed, *self.discarded]


class OPROOrchestrator:
    """
    OPROOrchestrator runs the generate → score → advance loop over stored sessions.

    Every mutation is a read-modify-write against the session store: the
    freshest session is fetched, changed in memory and written back whole. The
    store is synchronous and the loop is single-threaded, so a mutation never
    interleaves with another one; what can interleave are the awaits between a
    launch and its completion, which is why each completion re-fetches the
    session before applying anything.

    One session is active at a time. Opening another session bumps the
    activation epoch, and completions launched under an older epoch are
    discarded on arrival instead of being written. The network calls
    themselves are not aborted.

    Args:
        store (SessionStore): Where sessions live.
        client (ModelClient): Handle shared by the proposer and the scorer.
        questions (Sequence[QuestionAnswer]): Benchmark, read-only.
        settings (OPROSettings | None): Retry budgets, batch size, progress flag.
        sampler (Sampler | None): Example sampler for the meta-prompt.

    Methods:
        create_session / get_session / list_sessions / rename_session / delete_session: Session CRUD.
        open_session(session_id): Make a session active, cancelling in-flight work of the previous one.
        generate(session_id): Fill the empty current step with proposed candidates.
        score_one(session_id, prompt_id): Score one pending prompt.
        score_batch(session_id, batch_size): Score a bounded subset of pending prompts concurrently.
        advance(session_id): Open the next step once the current one is fully scored.
        custom_score(session_id, text): Score ad-hoc text without touching the session.
        run(session_id, steps): Drive the whole loop for a number of generations.
    """

    def __init__(
        self,
        store: SessionStore,
        client: ModelClient,
        questions: Sequence[QuestionAnswer],
        settings: Optional[OPROSettings] = None,
        *,
        sampler: Optional[Sampler] = None,
    ) -> None:
        self.settings = settings or OPROSettings()
        self.store = store
        self.questions: Tuple[QuestionAnswer, ...] = tuple(questions)
        self.synthesizer = MetaPromptSynthesizer(sampler)
        self.proposer = ProposerEngine(client, self.settings)
        self.scorer = ScorerEngine(client, self.settings)

        self._active_session_id: Optional[str] = None
        self._epoch = 0

    # ─────────────────────────── Sessions ────────────────────────────────
    def create_session(self, name: str, config: Optional[OPROConfig] = None) -> Session:
        session = Session(name=name, config=config or OPROConfig())
        while self.store.get(session.id) is not None:
            session = Session(name=name, config=session.config)
        self.store.put(session)
        logger.bind(session=session.id, **session.config.model_dump()).info(
            "Created session {!r}", name
        )
        return session

    def get_session(self, session_id: str) -> Session:
        session = self.store.get(session_id)
        if session is None:
            raise NotFoundFailure(f"Session {session_id} not found")
        return session

    def list_sessions(self) -> List[Session]:
        return self.store.list_all()

    def rename_session(self, session_id: str, name: str) -> Session:
        def rename(session: Session) -> Session:
            session.name = name
            return session

        return self._mutate(session_id, rename)

    def delete_session(self, session_id: str) -> None:
        self.get_session(session_id)
        if self._active_session_id == session_id:
            self.close_session()
        self.store.delete(session_id)
        logger.bind(session=session_id).info("Deleted session")

    # ─────────────────────────── Activation ──────────────────────────────
    @property
    def active_session_id(self) -> Optional[str]:
        return self._active_session_id

    def open_session(self, session_id: str) -> Session:
        """
        Make ``session_id`` the active session.

        Switching away from another session discards every completion still in
        flight for it. Prompts left in ``scoring`` by discarded work are put back
        to ``pending`` so they can be scored again.
        """
        session = self.get_session(session_id)
        if self._active_session_id == session_id:
            return session
        if self._active_session_id is not None:
            logger.bind(old=self._active_session_id, new=session_id).info(
                "Session switched; in-flight results of the old session will be discarded"
            )
        self._epoch += 1
        self._active_session_id = session_id
        return self._recover_orphans(session_id)

    def close_session(self) -> None:
        self._epoch += 1
        self._active_session_id = None

    def _recover_orphans(self, session_id: str) -> Session:
        session = self.get_session(session_id)
        if not any(p.state is PromptState.SCORING for p in session.all_prompts()):
            return session

        def reset(s: Session) -> Session:
            for prompt in s.all_prompts():
                if prompt.state is PromptState.SCORING:
                    prompt.state = PromptState.PENDING
                    prompt.score = None
            return s

        logger.bind(session=session_id).warning("Resetting abandoned scoring prompts to pending")
        return self._mutate(session_id, reset)

    def _claim(self, session_id: str) -> _Ticket:
        if self._active_session_id is None:
            self.open_session(session_id)
        elif self._active_session_id != session_id:
            raise InactiveSessionFailure(
                f"Session {session_id} is not active (active: {self._active_session_id})"
            )
        return _Ticket(session_id, self._epoch)

    def _is_live(self, ticket: _Ticket) -> bool:
        return self._active_session_id == ticket.session_id and self._epoch == ticket.epoch

    # ─────────────────────────── Store helpers ───────────────────────────
    def _mutate(self, session_id: str, fn: Callable[[Session], T]) -> T:
        session = self.get_session(session_id)
        result = fn(session)
        session.touch()
        self.store.put(session)
        return result

    @staticmethod
    def _current_step(session: Session) -> Step:
        step = session.active_step()
        if step is None:
            raise NotFoundFailure(f"Current step {session.current_step} not found")
        return step

    @staticmethod
    def _find_prompt(session: Session, prompt_id: str) -> Prompt:
        prompt = session.find_prompt(prompt_id)
        if prompt is None:
            raise NotFoundFailure(f"Prompt {prompt_id} not found in session {session.id}")
        return prompt

    def _require_questions(self) -> None:
        if not self.questions:
            raise PreconditionFailure("Benchmark holds no questions; nothing to score against")

    # ─────────────────────────── Generate ────────────────────────────────
    async def generate(self, session_id: str) -> Optional[Session]:
        """
        Propose ``config.k`` candidates for the empty current step.

        Returns the updated session, or ``None`` when the session was switched
        while the proposer was running.

        Raises:
            StepNotEmptyFailure: The current step already holds prompts.
            GenerationFailure: The proposer failed; the step stays empty.
        """
        ticket = self._claim(session_id)
        session = self.get_session(session_id)
        step_number = self._current_step(session).step_number
        if self._current_step(session).prompts:
            raise StepNotEmptyFailure(f"Step {step_number} already has prompts")

        cfg = session.config
        meta_prompt = self.synthesizer.synthesize(session, self.questions)
        log = logger.bind(session=session_id, step=step_number)
        log.info("Generating {} candidates", cfg.k)
        texts = await self.proposer.propose(
            meta_prompt, cfg.k, cfg.optimizer_temperature, cfg.optimizer_model
        )

        if not self._is_live(ticket):
            log.info("Session changed during generation, discarding candidates")
            return None

        def append(fresh: Session) -> Session:
            step = self._current_step(fresh)
            if step.step_number != step_number or step.prompts:
                raise StepNotEmptyFailure(f"Step {step_number} was filled concurrently")
            step.prompts.extend(Prompt(text=t) for t in texts)
            return fresh

        updated = self._mutate(session_id, append)
        log.bind(count=len(texts)).info("Added candidates to step")
        return updated

    # ─────────────────────────── Score ───────────────────────────────────
    def _set_prompt(
        self, session: Session, prompt_id: str, state: PromptState, score: Optional[float]
    ) -> Prompt:
        prompt = self._find_prompt(session, prompt_id)
        prompt.state = state
        prompt.score = score
        return prompt

    async def _score_marked(
        self, ticket: _Ticket, prompt_id: str, text: str, cfg: OPROConfig
    ) -> Optional[Prompt]:
        log = logger.bind(session=ticket.session_id, prompt=prompt_id)
        try:
            accuracy = await self.scorer.score(
                text, self.questions, cfg.scorer_temperature, cfg.scorer_model
            )
        except Exception as exc:
            if not self._is_live(ticket):
                log.info("Session changed during scoring error, discarding")
                return None
            self._mutate(
                ticket.session_id,
                lambda s: self._set_prompt(s, prompt_id, PromptState.PENDING, None),
            )
            log.error("Failed to score prompt: {}", exc)
            raise ScoringFailure(f"Failed to score prompt {prompt_id}: {exc}") from exc

        if not self._is_live(ticket):
            log.info("Session changed during scoring, discarding score")
            return None
        return self._mutate(
            ticket.session_id,
            lambda s: self._set_prompt(s, prompt_id, PromptState.SCORED, round(accuracy, 2)),
        )

    async def score_one(self, session_id: str, prompt_id: str) -> Optional[Prompt]:
        """
        Score one ``pending`` prompt: ``pending → scoring → scored``.

        On failure the prompt goes back to ``pending`` with no score and
        :class:`ScoringFailure` is raised. Returns ``None`` when the session was
        switched before the score arrived.
        """
        ticket = self._claim(session_id)
        self._require_questions()

        def mark(session: Session) -> Tuple[str, OPROConfig]:
            prompt = self._find_prompt(session, prompt_id)
            if prompt.state is not PromptState.PENDING:
                raise InvalidPromptStateFailure(
                    f"Prompt {prompt_id} is {prompt.state.value}, expected pending"
                )
            prompt.state = PromptState.SCORING
            return prompt.text, session.config

        text, cfg = self._mutate(session_id, mark)
        return await self._score_marked(ticket, prompt_id, text, cfg)

    async def score_batch(self, session_id: str, batch_size: Optional[int] = None) -> BatchResult:
        """
        Score up to ``batch_size`` pending prompts of the current step concurrently.

        Members are chosen and marked ``scoring`` in one write at launch; prompts
        added afterwards are not part of the batch. Waits for every member to
        settle. The batch size defaults to ``settings.score_batch_size`` and then
        to ``config.k``.
        """
        ticket = self._claim(session_id)
        self._require_questions()
        result = BatchResult(session_id)

        def mark(session: Session) -> Tuple[List[Tuple[str, str]], OPROConfig]:
            size = batch_size if batch_size is not None else (
                self.settings.score_batch_size or session.config.k
            )
            if size < 1:
                raise ValueError("batch_size must be at least 1")
            chosen = self._current_step(session).pending()[:size]
            for prompt in chosen:
                prompt.state = PromptState.SCORING
            return [(p.id, p.text) for p in chosen], session.config

        members, cfg = self._mutate(session_id, mark)
        log = logger.bind(session=session_id)
        if not members:
            log.info("No unscored prompts")
            return result

        log.info("Scoring {} prompts in parallel", len(members))
        outcomes = await asyncio.gather(
            *(self._score_marked(ticket, pid, text, cfg) for pid, text in members),
            return_exceptions=True,
        )
        for (pid, _), outcome in zip(members, outcomes):
            if isinstance(outcome, BaseException):
                result.failed[pid] = str(outcome)
            elif outcome is None:
                result.discarded.append(pid)
            else:
                result.scored[pid] = outcome.score

        log.bind(
            scored=len(result.scored), failed=len(result.failed), discarded=len(result.discarded)
        ).info("Batch settled")
        return result

    # ─────────────────────────── Advance ─────────────────────────────────
    def advance(self, session_id: str) -> Session:
        """
        Append an empty step once every prompt of the current one is scored.

        Raises:
            IncompleteStepFailure: The current step is empty or holds an unscored prompt.
        """
        self._claim(session_id)

        def next_step(session: Session) -> Session:
            step = self._current_step(session)
            if not step.complete:
                raise IncompleteStepFailure(
                    f"Step {step.step_number} must hold only scored prompts before advancing"
                )
            session.steps.append(Step(step_number=step.step_number + 1))
            session.current_step = step.step_number + 1
            return session

        session = self._mutate(session_id, next_step)
        logger.bind(session=session_id, step=session.current_step).info("Advanced to next step")
        return session

    # ─────────────────────────── Custom score ────────────────────────────
    async def custom_score(self, session_id: str, text: str) -> ScoreReport:
        """Score ad-hoc ``text`` with the session's scorer settings. Nothing is stored."""
        self._require_questions()
        cfg = self.get_session(session_id).config
        report = await self.scorer.evaluate(
            text, self.questions, cfg.scorer_temperature, cfg.scorer_model
        )
        logger.bind(session=session_id, text=preview(text)).info(
            "Custom score: {:.2f}%", report.accuracy
        )
        return report

    # ─────────────────────────── Reporting ───────────────────────────────
    @staticmethod
    def best_prompts(session: Session, n: int = 1) -> List[Prompt]:
        scored = [p for p in session.all_prompts() if p.is_scored]
        return sorted(scored, key=lambda p: p.score, reverse=True)[:n]

    # ─────────────────────────── Automatic loop ──────────────────────────
    async def run(self, session_id: str, steps: int, batch_size: Optional[int] = None) -> Session:
        """
        Drive ``steps`` full generations: generate, score every candidate, advance.

        A step that already holds prompts is resumed rather than regenerated.
        Stops early, without raising, when the session is switched.

        Raises:
            ScoringFailure: A scoring round produced no score at all.
            GenerationFailure: The proposer failed.
        """
        ticket = self._claim(session_id)
        for _ in range(steps):
            if not self._is_live(ticket):
                break
            session = self.get_session(session_id)
            if not self._current_step(session).prompts:
                if await self.generate(session_id) is None:
                    break

            while self._is_live(ticket):
                step = self._current_step(self.get_session(session_id))
                if step.complete:
                    break
                if not step.pending():
                    raise InvalidPromptStateFailure(
                        f"Step {step.step_number} has prompts being scored elsewhere"
                    )
                result = await self.score_batch(session_id, batch_size)
                if self._is_live(ticket) and not result.scored:
                    raise ScoringFailure(
                        f"No prompt of step {step.step_number} could be scored: {result.failed}"
                    )

            if not self._is_live(ticket):
                break
            session = self.advance(session_id)
            best = self.best_prompts(session)
            if best:
                logger.bind(session=session_id, step=session.current_step, best=best[0].score).info(
                    "Best so far: {}", preview(best[0].text)
                )

        session = self.get_session(session_id)
        best = self.best_prompts(session)
        if best:
            logger.bind(final_score=best[0].score).info("=== BEST PROMPT ===\n{}", best[0].text)
        return session
