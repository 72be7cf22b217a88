from opro.metrics import UsageStats


def test_read_returns_a_copy_and_reset_clears():
    stats = UsageStats()
    stats.record_request("scorer", "gemini-2.5-flash", 100, 20)
    stats.record_request("scorer", "gemini-2.5-flash", 50, 10)
    stats.record_outcome(True)
    stats.record_outcome(False)

    snap = stats.read()
    snap.roles["scorer"].requests = 99

    fresh = stats.read()
    assert fresh.roles["scorer"].requests == 2
    assert fresh.models["gemini-2.5-flash"].prompt_tokens == 150
    assert fresh.graded == 2
    assert fresh.total_requests == 2

    stats.reset()
    assert stats.read().total_requests == 0
    assert stats.read().graded == 0


def test_estimate_cost_uses_model_price_or_default():
    stats = UsageStats()
    stats.record_request("optimizer", "known", 1_000_000, 0)
    stats.record_request("scorer", "unknown", 0, 1_000_000)
    prices = {"known": {"input": 2.0, "output": 8.0}, "default": {"input": 1.0, "output": 3.0}}

    assert stats.estimate_cost(prices) == 5.0
