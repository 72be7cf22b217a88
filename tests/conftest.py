import asyncio
import inspect
import json
from typing import Any, Callable, Dict, List, Optional, Sequence

import pytest

from opro.clients import Completion
from opro.config import OPROSettings
from opro.data_models import QuestionAnswer
from opro.metrics import USAGE
from opro.replies import TEXTS_SCHEMA


def texts_json(*texts: str) -> str:
    return json.dumps({"total_texts": str(len(texts)), "texts": list(texts)})


def answer_json(answer: Any) -> str:
    return json.dumps({"solve": "worked it out", "answer": answer})


class FakeClient:
    """Scripted stand-in for a model client.

    ``propose`` is a list consumed one item per proposer call (the last item
    repeats); ``grade`` maps the full grading prompt to a reply. Items may be
    strings, ``None`` or exceptions to raise.
    """

    def __init__(
        self,
        propose: Optional[Sequence[Any]] = None,
        grade: Optional[Callable[[str], Any]] = None,
    ) -> None:
        self.propose_replies: List[Any] = list(propose or [])
        self.grade = grade
        self.calls: List[Dict[str, Any]] = []

    async def complete_json(self, prompt, *, model, temperature, schema, max_tokens):
        self.calls.append(
            {"kind": schema["name"], "prompt": prompt, "model": model, "temperature": temperature}
        )
        await asyncio.sleep(0)
        if schema["name"] == TEXTS_SCHEMA["name"]:
            if len(self.propose_replies) > 1:
                item = self.propose_replies.pop(0)
            else:
                item = self.propose_replies[0]
        else:
            item = self.grade(prompt)
            if inspect.isawaitable(item):
                item = await item
        if isinstance(item, BaseException):
            raise item
        return Completion(text=item, prompt_tokens=10, completion_tokens=5)

    def count(self, kind: str) -> int:
        return sum(1 for c in self.calls if c["kind"] == kind)


def oracle(questions: Sequence[QuestionAnswer], wrong: Sequence[str] = ()):
    """Grader that answers every question correctly unless the candidate starts with a ``wrong`` marker."""

    def grade(prompt: str) -> str:
        candidate, _, question = prompt.partition("\n\n")
        for qa in questions:
            if qa.question == question:
                if any(candidate.startswith(w) for w in wrong):
                    return answer_json(qa.gold_answer + 1)
                return answer_json(qa.gold_answer)
        raise AssertionError(f"unknown question in {prompt!r}")

    return grade


@pytest.fixture
def settings(tmp_path) -> OPROSettings:
    return OPROSettings(
        openai_api_key="sk-test",
        gemini_api_key="g-test",
        proposer_retry_delay=0,
        scorer_retry_delay=0,
        request_stagger=0,
        show_progress=False,
        store_dir=str(tmp_path / "store"),
        benchmark_path=str(tmp_path / "bench.tsv"),
    )


@pytest.fixture
def questions() -> List[QuestionAnswer]:
    return [
        QuestionAnswer(question="What is 2 + 3?", gold_answer=5),
        QuestionAnswer(question="What is 4 * 4?", gold_answer=16),
        QuestionAnswer(question="What is 10 - 7?", gold_answer=3),
    ]


@pytest.fixture(autouse=True)
def _reset_usage():
    USAGE.reset()
    yield
    USAGE.reset()
