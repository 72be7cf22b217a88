from __future__ import annotations

from typing import Dict, List, Optional, Sequence, Tuple

from .constants import META_PROMPT_EXAMPLES
from .data_models import Prompt, QuestionAnswer, Session
from .utils import Sampler, random_sampler


def format_score(score: float) -> str:
    """Render ``50.0`` as ``50`` and ``33.33`` as ``33.33``."""
    return f"{score:g}" if score == int(score) else f"{round(score, 2)}"


def format_answer(value: float) -> str:
    return str(int(value)) if float(value).is_integer() else str(value)


def top_candidates(session: Session) -> List[Tuple[float, str]]:
    """
    Best distinct scored candidates of ``session``, lowest score first.

    Every scored prompt of every step goes into one pool. Duplicated texts keep
    their highest score; only a strictly greater score replaces the entry seen
    first. The pool is sorted by score descending, cut to ``config.top_x`` and
    then reversed so that the best candidate comes last.
    """
    best: Dict[str, Prompt] = {}
    for step in session.steps:
        for prompt in step.prompts:
            if not prompt.is_scored:
                continue
            incumbent = best.get(prompt.text)
            if incumbent is None or prompt.score > incumbent.score:
                best[prompt.text] = prompt

    ranked = sorted(best.values(), key=lambda p: p.score, reverse=True)
    kept = ranked[: session.config.top_x]
    kept.reverse()
    return [(p.score, p.text) for p in kept]


class MetaPromptSynthesizer:
    """
    MetaPromptSynthesizer renders the request sent to the proposer model.

    Step 0 gets an initial prompt built from a few benchmark examples only; later
    steps also list the best candidates found so far together with their scores.
    The instance holds no session state, so the only source of variation is the
    injected sampler.

    Args:
        sampler (Sampler | None): "pick n of m" callable; defaults to a uniform random sampler.
        n_examples (int): Benchmark examples shown per meta-prompt.
    """

    def __init__(self, sampler: Optional[Sampler] = None, n_examples: int = META_PROMPT_EXAMPLES):
        self.sampler = sampler or random_sampler()
        self.n_examples = n_examples

    def synthesize(self, session: Session, benchmark: Sequence[QuestionAnswer]) -> str:
        if session.current_step == 0:
            return self._initial(benchmark, session.config.k)
        return self._continuation(session, benchmark)

    def _examples(self, benchmark: Sequence[QuestionAnswer]) -> List[QuestionAnswer]:
        return self.sampler(benchmark, self.n_examples)

    def _initial(self, benchmark: Sequence[QuestionAnswer], k: int) -> str:
        lines = [
            "Your task is to write an instruction that is placed in front of a question "
            "to help a language model solve it correctly.",
            "",
            "In each exemplar below, <INS> marks where your instruction goes. The model "
            "reads the input with your instruction in place and must produce the ground "
            "truth answer.",
            "",
        ]
        for ex in self._examples(benchmark):
            lines += [
                "Problem:",
                f"Q: <INS> {ex.question}",
                "Ground truth answer:",
                format_answer(ex.gold_answer),
                "",
            ]
        lines.append(
            f"Write {k} new instructions that help solve similar problems correctly. "
            "Each instruction should be clear and concise and encourage step-by-step reasoning."
        )
        return "\n".join(lines) + "\n"

    def _continuation(self, session: Session, benchmark: Sequence[QuestionAnswer]) -> str:
        k = session.config.k
        lines = [
            f"Your task is to write {k} starting sentences <Start> that raise the precision "
            "of a language model solving grade school math problems. Scores range from 0 to "
            "100, higher is better. Previous starting sentences and their scores follow, "
            "sorted in ascending order.",
            "",
        ]
        for score, text in top_candidates(session):
            lines.append(f"Precision: {format_score(score)} <Start>{text}</Start>")
        lines += [
            "",
            "Below are exemplar problems. Your <Start> sentence is placed at the beginning "
            "of the answer.",
            "",
        ]
        for ex in self._examples(benchmark):
            lines.append(
                f"Problem: {ex.question} <Start> Ground truth: {format_answer(ex.gold_answer)}"
            )
        lines += [
            "",
            f"Generate {k} new starting sentences that closely follow the structure and "
            "wording of the highest scoring sentences above. Stay near the best ones and "
            "aim for an even higher precision.",
        ]
        return "\n".join(lines) + "\n"
