import asyncio

import pytest

from opro.data_models import QuestionAnswer
from opro.engines import ProposerEngine, ScorerEngine
from opro.errors import GenerationFailure
from opro.metrics import USAGE
from opro.replies import ANSWER_SCHEMA, TEXTS_SCHEMA

from conftest import FakeClient, answer_json, oracle, texts_json


# ─────────────────────────── Proposer ────────────────────────────────────
def test_propose_truncates_and_strips(settings):
    client = FakeClient(propose=[texts_json("<Start> one </Start>", "two", "three")])
    engine = ProposerEngine(client, settings)

    texts = asyncio.run(engine.propose("meta", 2, 1.0, "gemini-2.5-flash"))

    assert texts == ["one", "two"]
    assert client.calls[0]["temperature"] == 1.0
    assert client.calls[0]["model"] == "gemini-2.5-flash"


@pytest.mark.parametrize(
    "first", [None, "not json", texts_json(), ConnectionError("reset by peer")]
)
def test_propose_retries_once_on_any_failure(settings, first):
    client = FakeClient(propose=[first, texts_json("a", "b")])

    texts = asyncio.run(ProposerEngine(client, settings).propose("meta", 2, 0.7, "gpt-4o-mini"))

    assert texts == ["a", "b"]
    assert client.count(TEXTS_SCHEMA["name"]) == 2


def test_propose_gives_up_after_two_attempts(settings):
    client = FakeClient(propose=[ConnectionError("down")])

    with pytest.raises(GenerationFailure, match="after 2 attempts: down") as info:
        asyncio.run(ProposerEngine(client, settings).propose("meta", 2, 0.7, "gpt-4o-mini"))

    assert isinstance(info.value.__cause__, ConnectionError)
    assert client.count(TEXTS_SCHEMA["name"]) == 2


def test_propose_treats_all_blank_candidates_as_unusable(settings):
    client = FakeClient(propose=[texts_json("<Start></Start>", "  ")])
    with pytest.raises(GenerationFailure):
        asyncio.run(ProposerEngine(client, settings).propose("meta", 2, 0.7, "gpt-4o-mini"))


@pytest.mark.parametrize("meta,k", [("", 2), ("meta", 0), ("meta", 17)])
def test_propose_validates_inputs(settings, meta, k):
    client = FakeClient(propose=[texts_json("a")])
    with pytest.raises(ValueError):
        asyncio.run(ProposerEngine(client, settings).propose(meta, k, 0.7, "gpt-4o-mini"))
    assert client.calls == []


def test_propose_records_usage(settings):
    client = FakeClient(propose=[texts_json("a")])
    asyncio.run(ProposerEngine(client, settings).propose("meta", 1, 0.7, "gpt-4o-mini"))

    usage = USAGE.read()
    assert usage.roles["optimizer"].requests == 1
    assert usage.models["gpt-4o-mini"].prompt_tokens == 10


# ─────────────────────────── Scorer ──────────────────────────────────────
FOUR = [QuestionAnswer(question=f"q{i}", gold_answer=i * 10) for i in range(1, 5)]


def test_accuracy_counts_failures_as_incorrect(settings):
    def grade(prompt):
        question = prompt.split("\n\n")[1]
        if question == "q2":
            return answer_json(999)
        if question == "q3":
            return ConnectionError("grader unavailable")
        return answer_json(int(question[1:]) * 10)

    engine = ScorerEngine(FakeClient(grade=grade), settings)

    assert asyncio.run(engine.score("Think.", FOUR, 0.0, "gemini-2.5-flash")) == 50.0


def test_report_exposes_failure_count(settings):
    def grade(prompt):
        return None if prompt.endswith("q1") else answer_json(0)

    report = asyncio.run(
        ScorerEngine(FakeClient(grade=grade), settings).evaluate("Think.", FOUR, 0.0, "gpt-4o")
    )

    assert report.correct == 0
    assert report.failed == 1
    assert report.incorrect == 4
    assert report.summary()["total"] == 4
    assert report.outcomes[0].failed
    assert report.outcomes[0].answer is None


def test_grading_retries_each_question_independently(settings):
    attempts = {}

    def grade(prompt):
        attempts[prompt] = attempts.get(prompt, 0) + 1
        if attempts[prompt] == 1:
            return "{broken"
        return answer_json(int(prompt.split("\n\n")[1][1:]) * 10)

    client = FakeClient(grade=grade)
    accuracy = asyncio.run(ScorerEngine(client, settings).score("Go.", FOUR, 0.0, "gpt-4o-mini"))

    assert accuracy == 100.0
    assert set(attempts.values()) == {2}
    assert client.count(ANSWER_SCHEMA["name"]) == 8


def test_full_prompt_joins_candidate_and_question(settings, questions):
    client = FakeClient(grade=oracle(questions))
    asyncio.run(ScorerEngine(client, settings).score("Solve carefully.", questions, 0.0, "gpt-4o"))

    prompts = sorted(c["prompt"] for c in client.calls)
    assert prompts == sorted(f"Solve carefully.\n\n{qa.question}" for qa in questions)


def test_all_questions_are_in_flight_together(settings, questions):
    async def main():
        started = 0
        everyone_in = asyncio.Event()

        async def grade(prompt):
            nonlocal started
            started += 1
            if started == len(questions):
                everyone_in.set()
            await asyncio.wait_for(everyone_in.wait(), timeout=1)
            return oracle(questions)(prompt)

        engine = ScorerEngine(FakeClient(grade=grade), settings)
        return await engine.score("Think.", questions, 0.0, "gpt-4o")

    assert asyncio.run(main()) == 100.0


def test_one_failure_does_not_cancel_siblings(settings, questions):
    def grade(prompt):
        if prompt.endswith(questions[0].question):
            return RuntimeError("unexpected")
        return oracle(questions)(prompt)

    report = asyncio.run(
        ScorerEngine(FakeClient(grade=grade), settings).evaluate("Think.", questions, 0.0, "gpt-4o")
    )

    assert report.correct == 2
    assert report.failed == 1
    assert round(report.accuracy, 2) == 66.67


def test_scorer_rejects_empty_inputs(settings, questions):
    engine = ScorerEngine(FakeClient(grade=oracle(questions)), settings)
    with pytest.raises(ValueError):
        asyncio.run(engine.score("Think.", [], 0.0, "gpt-4o"))
    with pytest.raises(ValueError):
        asyncio.run(engine.score("", questions, 0.0, "gpt-4o"))


def test_scorer_records_progress(settings, questions):
    engine = ScorerEngine(FakeClient(grade=oracle(questions, wrong=["Bad"])), settings)
    asyncio.run(engine.score("Bad idea.", questions, 0.0, "gpt-4o"))

    usage = USAGE.read()
    assert usage.incorrect == 3
    assert usage.roles["scorer"].requests == 3
