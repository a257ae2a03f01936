"""Tests for local heuristics, caching, coalescing and remote fallback."""

import asyncio
import json
from datetime import date, datetime, timedelta, timezone
from unittest.mock import AsyncMock

import httpx
import pytest

from conftest import make_entry
from vibejournal.analysis import (
    AnalysisEngine,
    AnalysisKind,
    AnalysisRequest,
    RateLimiter,
    analyze_patterns_locally,
    analyze_sentiment_locally,
    analyze_trends_locally,
    fingerprint,
    tokenize,
    writing_streak,
)
from vibejournal.errors import RemoteUnavailableError
from vibejournal.models import Ciphertext, Entry
from vibejournal.remote import RemoteAnalyzer

NOW = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)


def _remote_reply(indexes, sentiment="positive", score=0.8):
    return json.dumps({
        "overallSentiment": sentiment,
        "sentimentScore": score,
        "entrySentiments": [
            {"entryIndex": i, "sentiment": sentiment, "score": score, "confidence": 0.95}
            for i in indexes
        ],
    })


def _remote(reply=None):
    remote = AsyncMock()
    remote.complete.return_value = reply if reply is not None else _remote_reply([0])
    return remote


def _locked_entry(entry_id="locked"):
    return Entry(
        id=entry_id,
        body=Ciphertext(b"\x01\x02\x03", b"n" * 12),
        timestamp=NOW,
        created_at=NOW,
        updated_at=NOW,
    )


# ---------------------------------------------------------------------------
# Local sentiment
# ---------------------------------------------------------------------------


class TestLocalSentiment:
    def test_positive_entry(self):
        result = analyze_sentiment_locally([make_entry("happy and grateful")], NOW)
        (item,) = result.data.entry_sentiments
        assert item.sentiment == "positive"
        assert item.score == pytest.approx(0.2)
        assert item.confidence == pytest.approx(0.16)
        assert result.data.overall_sentiment == "positive"
        assert result.confidence == 0.7
        assert result.source == "local"

    def test_negative_entry(self):
        result = analyze_sentiment_locally([make_entry("sad and lonely")], NOW)
        (item,) = result.data.entry_sentiments
        assert item.sentiment == "negative"
        assert item.score == pytest.approx(-0.2)
        assert result.data.overall_sentiment == "negative"

    def test_score_is_capped(self):
        text = "happy good great amazing wonderful love excited joy smile laugh grateful blessed"
        (item,) = analyze_sentiment_locally([make_entry(text)], NOW).data.entry_sentiments
        assert item.score == 1.0

    def test_single_weak_word_is_neutral_overall(self):
        result = analyze_sentiment_locally([make_entry("I am happy")], NOW)
        assert result.data.entry_sentiments[0].sentiment == "positive"
        assert result.data.overall_sentiment == "neutral"

    def test_empty_input(self):
        result = analyze_sentiment_locally([], NOW)
        assert result.data.overall_sentiment == "neutral"
        assert result.data.sentiment_score == 0.0
        assert result.data.entry_sentiments == []

    def test_locked_entries_score_neutral(self):
        (item,) = analyze_sentiment_locally([_locked_entry()], NOW).data.entry_sentiments
        assert (item.sentiment, item.score) == ("neutral", 0.0)


# ---------------------------------------------------------------------------
# Patterns
# ---------------------------------------------------------------------------


def test_tokenize_strips_punctuation_and_stop_words():
    assert tokenize("Really grateful, today! The sun-shine.") == ["grateful", "sunshine"]


def test_recurring_word_pattern():
    entries = [
        make_entry("grateful for the sunshine"),
        make_entry("grateful for my family"),
        make_entry("so grateful tonight"),
    ]
    result = analyze_patterns_locally(entries, NOW)
    by_name = {p.name: p for p in result.data.patterns}
    assert by_name["grateful"].frequency == 3
    assert sorted(by_name["grateful"].entries) == sorted(e.id for e in entries)
    assert result.data.top_patterns == ["grateful"]
    assert result.confidence == 0.6


def test_patterns_capped_and_sorted():
    words = [f"word{chr(97 + i)}" for i in range(12)]
    text = " ".join(words)
    entries = [make_entry(text), make_entry(text + " " + words[0])]
    result = analyze_patterns_locally(entries, NOW)
    assert len(result.data.patterns) == 10
    assert result.data.patterns[0].name == "worda"
    assert result.data.patterns[0].frequency == 3
    assert len(result.data.top_patterns) == 5


# ---------------------------------------------------------------------------
# Trends
# ---------------------------------------------------------------------------


def test_streak_breaks_at_gap():
    today = date(2024, 6, 1)
    days = [today, today - timedelta(days=1), today - timedelta(days=3)]
    assert writing_streak(days, today) == 2


def test_streak_zero_when_nothing_recent():
    today = date(2024, 6, 1)
    assert writing_streak([today - timedelta(days=5)], today) == 0
    assert writing_streak([], today) == 0


def test_trends_over_local_days():
    local_now = datetime.now().astimezone().replace(hour=12, minute=0, second=0, microsecond=0)
    today = local_now.date()
    entries = [
        make_entry("a", when=local_now, emojis=["😊"], mood="happy"),
        make_entry("b", when=local_now - timedelta(hours=1), emojis=["😊", "🚀"], mood="happy"),
        make_entry("c", when=local_now - timedelta(days=1), mood="tired"),
        make_entry("d", when=local_now - timedelta(days=3)),
    ]
    result = analyze_trends_locally(entries, NOW, today=today)
    data = result.data

    assert [t.date for t in data.mood_trends] == sorted(t.date for t in data.mood_trends)
    assert data.mood_trends[-1].mood == "happy"
    assert data.mood_trends[-1].count == 2
    assert data.mood_trends[0].mood == "neutral"

    assert data.consistency.writing_streak == 2
    assert data.consistency.average_entries_per_week == 4.0
    assert data.consistency.most_active_day == local_now.strftime("%A")

    assert data.emoji_usage[0].emoji == "😊"
    assert data.emoji_usage[0].count == 2
    assert data.emoji_usage[0].frequency == pytest.approx(0.5)
    assert result.confidence == 0.9


def test_trends_empty():
    data = analyze_trends_locally([], NOW).data
    assert data.mood_trends == []
    assert data.emoji_usage == []
    assert data.consistency.most_active_day == "Unknown"
    assert data.consistency.writing_streak == 0
    assert data.consistency.average_entries_per_week == 0


# ---------------------------------------------------------------------------
# Fingerprint / rate limiter
# ---------------------------------------------------------------------------


def test_fingerprint_ignores_entry_order():
    a, b = make_entry("a", entry_id="a"), make_entry("b", entry_id="b")
    assert fingerprint(AnalysisRequest("sentiment", [a, b])) == fingerprint(AnalysisRequest("sentiment", [b, a]))
    assert fingerprint(AnalysisRequest("sentiment", [a])) != fingerprint(AnalysisRequest("patterns", [a]))
    ranged = AnalysisRequest("sentiment", [a], (NOW - timedelta(days=1), NOW))
    assert fingerprint(ranged) != fingerprint(AnalysisRequest("sentiment", [a]))


@pytest.mark.asyncio
async def test_rate_limiter_spacing_and_window(fake_clock):
    limiter = RateLimiter(clock=fake_clock, sleep=fake_clock.sleep)
    assert await limiter.acquire()
    assert await limiter.acquire()
    assert await limiter.acquire()
    assert not await limiter.acquire()
    assert fake_clock.sleeps == [2.0, 2.0]

    fake_clock.now += 61
    assert await limiter.acquire()


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------


class ManualClock:
    def __init__(self):
        self.now = NOW

    def __call__(self):
        return self.now


@pytest.mark.asyncio
async def test_cache_returns_same_result_until_ttl():
    clock = ManualClock()
    engine = AnalysisEngine(clock=clock)
    request = AnalysisRequest(AnalysisKind.PATTERNS, [make_entry("grateful grateful")])

    first = await engine.analyze(request)
    clock.now += timedelta(hours=1)
    assert (await engine.analyze(request)).computed_at == first.computed_at

    clock.now += timedelta(hours=24)
    assert (await engine.analyze(request)).computed_at != first.computed_at


@pytest.mark.asyncio
async def test_clear_cache_forces_recompute():
    clock = ManualClock()
    engine = AnalysisEngine(clock=clock)
    request = AnalysisRequest("trends", [make_entry("x")])
    first = await engine.analyze(request)
    engine.clear_cache()
    clock.now += timedelta(seconds=1)
    assert (await engine.analyze(request)).computed_at != first.computed_at


@pytest.mark.asyncio
async def test_remote_sentiment_used_when_available(fake_clock):
    remote = _remote()
    engine = AnalysisEngine(remote, rate_limiter=RateLimiter(clock=fake_clock, sleep=fake_clock.sleep))
    entry = make_entry("a fine day")
    result = await engine.analyze(AnalysisRequest("sentiment", [entry]))

    assert result.source == "remote"
    assert result.confidence == 0.9
    assert result.data.overall_sentiment == "positive"
    assert result.data.entry_sentiments[0].entry_id == entry.id
    remote.complete.assert_awaited_once()


@pytest.mark.asyncio
async def test_concurrent_identical_requests_share_one_call(fake_clock):
    remote = _remote()

    async def slow_complete(prompt):
        await asyncio.sleep(0.01)
        return _remote_reply([0])

    remote.complete.side_effect = slow_complete
    engine = AnalysisEngine(remote, rate_limiter=RateLimiter(clock=fake_clock, sleep=fake_clock.sleep))
    request = AnalysisRequest("sentiment", [make_entry("hello there")])

    first, second = await asyncio.gather(engine.analyze(request), engine.analyze(request))
    assert first is second
    assert remote.complete.await_count == 1


@pytest.mark.asyncio
async def test_fourth_request_in_window_falls_back_locally(fake_clock):
    remote = _remote()
    engine = AnalysisEngine(remote, rate_limiter=RateLimiter(clock=fake_clock, sleep=fake_clock.sleep))

    results = []
    for i in range(4):
        request = AnalysisRequest("sentiment", [make_entry(f"entry number {i}")])
        results.append(await engine.analyze(request))

    assert remote.complete.await_count == 3
    assert [r.source for r in results] == ["remote", "remote", "remote", "local"]
    assert sum(fake_clock.sleeps) < 10


@pytest.mark.asyncio
async def test_remote_failure_falls_back_and_is_not_cached(fake_clock):
    remote = _remote()
    remote.complete.side_effect = RemoteUnavailableError("offline")
    engine = AnalysisEngine(remote, rate_limiter=RateLimiter(clock=fake_clock, sleep=fake_clock.sleep))
    request = AnalysisRequest("sentiment", [make_entry("happy and grateful")])

    result = await engine.analyze(request)
    assert result.source == "local"
    assert result.data.overall_sentiment == "positive"

    await engine.analyze(request)
    assert remote.complete.await_count == 2


@pytest.mark.asyncio
@pytest.mark.parametrize("reply", ["not json at all", _remote_reply([5]), '{"overallSentiment": "ecstatic"}'])
async def test_malformed_remote_reply_falls_back(fake_clock, reply):
    engine = AnalysisEngine(_remote(reply), rate_limiter=RateLimiter(clock=fake_clock, sleep=fake_clock.sleep))
    result = await engine.analyze(AnalysisRequest("sentiment", [make_entry("sad and lonely")]))
    assert result.source == "local"
    assert result.data.overall_sentiment == "negative"


@pytest.mark.asyncio
async def test_ciphertext_never_sent(fake_clock):
    remote = _remote(_remote_reply([1]))
    engine = AnalysisEngine(remote, rate_limiter=RateLimiter(clock=fake_clock, sleep=fake_clock.sleep))
    plain = make_entry("visible words")
    result = await engine.analyze(AnalysisRequest("sentiment", [_locked_entry(), plain]))

    (prompt,) = remote.complete.await_args.args
    assert "Entry 1: visible words" in prompt
    assert "Entry 0" not in prompt
    assert result.data.entry_sentiments[0].entry_id == plain.id


@pytest.mark.asyncio
async def test_all_locked_entries_skip_remote(fake_clock):
    remote = _remote()
    engine = AnalysisEngine(remote, rate_limiter=RateLimiter(clock=fake_clock, sleep=fake_clock.sleep))
    result = await engine.analyze(AnalysisRequest("sentiment", [_locked_entry()]))
    assert result.source == "local"
    remote.complete.assert_not_awaited()


@pytest.mark.asyncio
async def test_clear_cache_during_flight_discards_result(fake_clock):
    remote = _remote()
    started, gate = asyncio.Event(), asyncio.Event()

    async def gated_complete(prompt):
        started.set()
        await gate.wait()
        return _remote_reply([0])

    remote.complete.side_effect = gated_complete
    engine = AnalysisEngine(remote, rate_limiter=RateLimiter(clock=fake_clock, sleep=fake_clock.sleep))
    request = AnalysisRequest("sentiment", [make_entry("pending")])

    task = asyncio.ensure_future(engine.analyze(request))
    await started.wait()
    engine.clear_cache()
    gate.set()
    await task

    remote.complete.side_effect = None
    remote.complete.return_value = _remote_reply([0])
    await engine.analyze(request)
    assert remote.complete.await_count == 2


@pytest.mark.asyncio
async def test_repeated_entry_index_falls_back(fake_clock):
    engine = AnalysisEngine(
        _remote(_remote_reply([0, 0])),
        rate_limiter=RateLimiter(clock=fake_clock, sleep=fake_clock.sleep),
    )
    entry = make_entry("happy and grateful")
    result = await engine.analyze(AnalysisRequest("sentiment", [entry]))
    assert result.source == "local"
    assert [s.entry_id for s in result.data.entry_sentiments] == [entry.id]


@pytest.mark.asyncio
@pytest.mark.parametrize("content", [{"overallSentiment": "positive"}, 42, ["x"]])
async def test_non_text_reply_from_http_client_falls_back(fake_clock, content):
    def handler(request):
        return httpx.Response(200, json={"choices": [{"message": {"content": content}}]})

    remote = RemoteAnalyzer("sk-test", transport=httpx.MockTransport(handler))
    engine = AnalysisEngine(remote, rate_limiter=RateLimiter(clock=fake_clock, sleep=fake_clock.sleep))
    try:
        result = await engine.analyze(AnalysisRequest("sentiment", [make_entry("happy and grateful")]))
    finally:
        await engine.aclose()
    assert result.source == "local"
    assert result.data.overall_sentiment == "positive"
