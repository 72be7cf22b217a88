from opro.config import OPROConfig
from opro.data_models import Prompt, PromptState, QuestionAnswer, Session, Step
from opro.meta_prompt import MetaPromptSynthesizer, format_score, top_candidates


def first_n(items, n):
    return list(items)[:n]


def scored(text, score):
    return Prompt(text=text, state=PromptState.SCORED, score=score)


def session_with(prompts_per_step, k=4, top_x=5):
    steps = [Step(step_number=i, prompts=ps) for i, ps in enumerate(prompts_per_step)]
    steps.append(Step(step_number=len(steps)))
    return Session(
        name="s",
        config=OPROConfig(k=k, top_x=top_x),
        steps=steps,
        current_step=len(steps) - 1,
    )


def test_duplicates_keep_highest_score():
    session = session_with([[scored("same", 40)], [scored("same", 90), scored("other", 10)]])
    assert top_candidates(session) == [(10, "other"), (90, "same")]


def test_ties_collapse_to_a_single_entry():
    first = scored("same", 70)
    later = scored("same", 70)
    session = session_with([[first, later]])

    pool = top_candidates(session)

    assert pool == [(70, "same")]


def test_truncates_to_top_x_then_presents_ascending():
    session = session_with([[scored("a", 10), scored("b", 50), scored("c", 30)]], top_x=2)
    assert top_candidates(session) == [(30, "c"), (50, "b")]


def test_unscored_prompts_are_ignored():
    pending = Prompt(text="pending")
    scoring = Prompt(text="scoring", state=PromptState.SCORING)
    session = session_with([[pending, scoring, scored("done", 20)]])
    assert top_candidates(session) == [(20, "done")]


def test_initial_prompt_shows_examples_and_k(questions):
    session = Session(name="s", config=OPROConfig(k=7))
    synth = MetaPromptSynthesizer(sampler=first_n)

    text = synth.synthesize(session, questions)

    assert "<INS>" in text
    assert "Write 7 new instructions" in text
    for qa in questions:
        assert f"Q: <INS> {qa.question}" in text
    assert "\n16\n" in text


def test_initial_prompt_clamps_sample_to_small_benchmark():
    bench = [QuestionAnswer(question="Only one?", gold_answer=1)]
    text = MetaPromptSynthesizer().synthesize(Session(name="s", config=OPROConfig()), bench)
    assert text.count("Problem:") == 1


def test_continuation_lists_pool_ascending_then_fresh_examples(questions):
    session = session_with(
        [[scored("low", 12.5), scored("high", 80)], [scored("mid", 40)]], k=3, top_x=5
    )
    calls = []

    def sampler(items, n):
        calls.append(n)
        return list(items)[-n:]

    text = MetaPromptSynthesizer(sampler=sampler).synthesize(session, questions)

    low = text.index("Precision: 12.5 <Start>low</Start>")
    mid = text.index("Precision: 40 <Start>mid</Start>")
    high = text.index("Precision: 80 <Start>high</Start>")
    assert low < mid < high
    assert "Generate 3 new starting sentences" in text
    assert "Problem: What is 10 - 7? <Start> Ground truth: 3" in text
    assert calls == [3]


def test_continuation_with_empty_pool_still_renders(questions):
    session = session_with([[Prompt(text="never scored")]])
    text = MetaPromptSynthesizer(sampler=first_n).synthesize(session, questions)
    assert "Precision:" not in text
    assert "Problem: What is 2 + 3?" in text


def test_format_score():
    assert format_score(50.0) == "50"
    assert format_score(33.33) == "33.33"
    assert format_score(100) == "100"
