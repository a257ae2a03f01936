# -*- coding: utf-8 -*-
"""Hybrid journal analysis: sentiment, recurring patterns, writing trends.

Sentiment may go to the remote collaborator when a credential is configured,
the rate limiter allows it, and at least one entry is plaintext. Everything
else, including every remote failure, is computed by the deterministic
local heuristics below. Results are cached per fingerprint (kind + time
range + sorted entry ids) and concurrent identical requests share one
in-flight computation.
"""
from __future__ import annotations

from collections import Counter
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from enum import Enum
from typing import Callable, Dict, List, Optional, Sequence, Tuple, Union
import asyncio
import logging
import math
import re
import time

from .errors import MalformedRemoteResponseError, RemoteUnavailableError
from .models import Entry, utcnow
from .remote import RemoteAnalyzer, build_sentiment_prompt, parse_sentiment_payload

logger = logging.getLogger(__name__)


class AnalysisKind(str, Enum):
    SENTIMENT = "sentiment"
    PATTERNS = "patterns"
    TRENDS = "trends"


# ---------------------------------------------------------------------
# Parameters
# ---------------------------------------------------------------------

CACHE_TTL = timedelta(hours=24)

REMOTE_SENTIMENT_CONFIDENCE = 0.9
LOCAL_SENTIMENT_CONFIDENCE = 0.7
PATTERN_CONFIDENCE = 0.6
TREND_CONFIDENCE = 0.9

RATE_LIMIT_CALLS = 3
RATE_LIMIT_WINDOW = 60.0
RATE_LIMIT_SPACING = 2.0

POSITIVE_WORDS = (
    "happy", "good", "great", "amazing", "wonderful", "love", "excited", "joy",
    "smile", "laugh", "grateful", "blessed", "proud", "accomplished", "peaceful",
)
NEGATIVE_WORDS = (
    "sad", "bad", "terrible", "awful", "hate", "angry", "frustrated", "worried",
    "anxious", "cry", "depressed", "stressed", "overwhelmed", "disappointed", "lonely",
)
STOP_WORDS = frozenset((
    "this", "that", "with", "have", "will", "been", "were", "they", "them",
    "their", "there", "when", "where", "what", "would", "could", "should",
    "about", "after", "before", "during", "through", "really", "think", "feel",
    "just", "like", "want", "need", "know", "time", "today", "yesterday",
    "tomorrow",
))

DAY_NAMES = ("Monday", "Tuesday", "Wednesday", "Thursday", "Friday", "Saturday", "Sunday")

NON_WORD_RE = re.compile(r"[^\w]", re.ASCII)
WHITESPACE_RE = re.compile(r"\s+")


# ---------------------------------------------------------------------
# Result types
# ---------------------------------------------------------------------

@dataclass
class EntrySentiment:
    entry_id: str
    sentiment: str
    score: float
    confidence: float


@dataclass
class SentimentData:
    overall_sentiment: str
    sentiment_score: float
    entry_sentiments: List[EntrySentiment] = field(default_factory=list)


@dataclass
class Pattern:
    name: str
    frequency: int
    entries: List[str]
    keywords: List[str]


@dataclass
class PatternData:
    patterns: List[Pattern]
    top_patterns: List[str]


@dataclass
class MoodTrend:
    date: str
    mood: str
    count: int


@dataclass
class Consistency:
    average_entries_per_week: float
    most_active_day: str
    writing_streak: int
    day_histogram: Dict[str, int] = field(default_factory=dict)


@dataclass
class EmojiUsage:
    emoji: str
    count: int
    frequency: float


@dataclass
class TrendData:
    mood_trends: List[MoodTrend]
    consistency: Consistency
    emoji_usage: List[EmojiUsage]


@dataclass
class AnalysisResult:
    kind: AnalysisKind
    data: Union[SentimentData, PatternData, TrendData]
    confidence: float
    computed_at: datetime
    source: str = "local"


@dataclass
class AnalysisRequest:
    kind: AnalysisKind
    entries: Sequence[Entry]
    time_range: Optional[Tuple[datetime, datetime]] = None

    def __post_init__(self) -> None:
        self.kind = AnalysisKind(self.kind)


def fingerprint(request: AnalysisRequest) -> str:
    """Cache key: kind, optional time range, sorted entry ids."""
    ids = ",".join(sorted(e.id for e in request.entries))
    if request.time_range:
        start, end = request.time_range
        span = f"{start.isoformat()}-{end.isoformat()}"
    else:
        span = "all"
    return f"{request.kind.value}-{span}-{ids}"


# ---------------------------------------------------------------------
# Local heuristics
# ---------------------------------------------------------------------

def _classify(mean: float) -> str:
    if mean > 0.1:
        return "positive"
    if mean < -0.1:
        return "negative"
    return "neutral"


def analyze_sentiment_locally(entries: Sequence[Entry], now: datetime) -> AnalysisResult:
    """Lexicon sentiment; ciphertext entries score as neutral."""
    entry_sentiments: List[EntrySentiment] = []
    for entry in entries:
        content = (entry.text or "").lower()
        pos = sum(1 for w in POSITIVE_WORDS if w in content)
        neg = sum(1 for w in NEGATIVE_WORDS if w in content)
        if pos > neg:
            sentiment, score = "positive", min(pos / 10, 1.0)
        elif neg > pos:
            sentiment, score = "negative", -min(neg / 10, 1.0)
        else:
            sentiment, score = "neutral", 0.0
        entry_sentiments.append(
            EntrySentiment(entry.id, sentiment, score, abs(score) * 0.8)
        )

    mean = sum(s.score for s in entry_sentiments) / len(entry_sentiments) if entry_sentiments else 0.0
    return AnalysisResult(
        kind=AnalysisKind.SENTIMENT,
        data=SentimentData(_classify(mean), mean, entry_sentiments),
        confidence=LOCAL_SENTIMENT_CONFIDENCE,
        computed_at=now,
    )


def tokenize(text: str) -> List[str]:
    """Lower-case, split on whitespace, strip non-word chars, drop short and stop words."""
    out = []
    for raw in WHITESPACE_RE.split(text.lower()):
        word = NON_WORD_RE.sub("", raw)
        if len(word) > 3 and word not in STOP_WORDS:
            out.append(word)
    return out


def analyze_patterns_locally(entries: Sequence[Entry], now: datetime) -> AnalysisResult:
    """Recurring words (frequency >= 2), top 10 patterns and top 5 names."""
    counts: Dict[str, int] = {}
    seen_in: Dict[str, Dict[str, None]] = {}
    for entry in entries:
        for word in tokenize(entry.text or ""):
            counts[word] = counts.get(word, 0) + 1
            seen_in.setdefault(word, {})[entry.id] = None

    ranked = sorted(
        ((w, c) for w, c in counts.items() if c >= 2),
        key=lambda item: item[1],
        reverse=True,
    )[:10]
    patterns = [Pattern(w, c, list(seen_in[w]), [w]) for w, c in ranked]
    return AnalysisResult(
        kind=AnalysisKind.PATTERNS,
        data=PatternData(patterns, [p.name for p in patterns[:5]]),
        confidence=PATTERN_CONFIDENCE,
        computed_at=now,
    )


def _local_day(ts: datetime) -> date:
    return ts.astimezone().date()


def writing_streak(days: Sequence[date], today: date) -> int:
    """Consecutive writing days walking back from *today*; stops at the first gap."""
    streak = 0
    current = today
    for day in sorted(set(days), reverse=True):
        if (current - day).days <= 1:
            streak += 1
            current = day
        else:
            break
    return streak


def analyze_trends_locally(
    entries: Sequence[Entry],
    now: datetime,
    today: Optional[date] = None,
) -> AnalysisResult:
    """Mood per day, writing consistency and emoji usage."""
    if today is None:
        today = now.astimezone().date()

    daily_moods: Dict[str, Counter] = {}
    day_counts: Counter = Counter()
    emoji_counts: Counter = Counter()
    for entry in entries:
        day = _local_day(entry.timestamp)
        daily_moods.setdefault(day.isoformat(), Counter())[entry.mood or "neutral"] += 1
        day_counts[DAY_NAMES[day.weekday()]] += 1
        emoji_counts.update(entry.emojis)

    mood_trends = []
    for day_key in sorted(daily_moods):
        mood, count = daily_moods[day_key].most_common(1)[0]
        mood_trends.append(MoodTrend(day_key, mood, count))

    most_active = day_counts.most_common(1)[0][0] if day_counts else "Unknown"

    weeks = 1
    if entries:
        stamps = [e.timestamp for e in entries]
        span = max(stamps) - min(stamps)
        weeks = max(1, math.ceil(span / timedelta(days=7)))

    total = len(entries)
    emoji_usage = [
        EmojiUsage(emoji, count, count / total)
        for emoji, count in emoji_counts.most_common()
    ]

    consistency = Consistency(
        average_entries_per_week=total / weeks,
        most_active_day=most_active,
        writing_streak=writing_streak([_local_day(e.timestamp) for e in entries], today),
        day_histogram=dict(day_counts),
    )
    return AnalysisResult(
        kind=AnalysisKind.TRENDS,
        data=TrendData(mood_trends, consistency, emoji_usage),
        confidence=TREND_CONFIDENCE,
        computed_at=now,
    )


# ---------------------------------------------------------------------
# Rate limiting
# ---------------------------------------------------------------------

class RateLimiter:
    """Fixed-window limiter with a minimum spacing between remote calls.

    One instance is shared by every caller of the engine that owns it.
    """

    def __init__(
        self,
        max_calls: int = RATE_LIMIT_CALLS,
        window: float = RATE_LIMIT_WINDOW,
        spacing: float = RATE_LIMIT_SPACING,
        *,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], "asyncio.Future"] = asyncio.sleep,
    ) -> None:
        self.max_calls = max_calls
        self.window = window
        self.spacing = spacing
        self._clock = clock
        self._sleep = sleep
        self.last_request: Optional[float] = None
        self.request_count = 0
        self.reset_time: Optional[float] = None
        self._lock = asyncio.Lock()

    def permits(self) -> bool:
        """True if another call fits in the current window (rolls the window over)."""
        now = self._clock()
        if self.reset_time is None or now > self.reset_time:
            self.request_count = 0
            self.reset_time = now + self.window
        return self.request_count < self.max_calls

    async def acquire(self) -> bool:
        """Claim a call slot, waiting out the spacing; False when the window is full."""
        async with self._lock:
            if not self.permits():
                return False
            if self.last_request is not None:
                wait = self.spacing - (self._clock() - self.last_request)
                if wait > 0:
                    logger.debug("Rate limiting: waiting %.2fs before remote call", wait)
                    await self._sleep(wait)
            self.last_request = self._clock()
            self.request_count += 1
            return True


# ---------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------

@dataclass
class _CacheEntry:
    result: AnalysisResult
    computed_at: datetime
    entry_count: int


class AnalysisEngine:
    """Caching, coalescing front end over remote and local analysis."""

    def __init__(
        self,
        remote: Optional[RemoteAnalyzer] = None,
        *,
        rate_limiter: Optional[RateLimiter] = None,
        cache_ttl: timedelta = CACHE_TTL,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._remote = remote
        self._limiter = rate_limiter or RateLimiter()
        self._ttl = cache_ttl
        self._clock = clock
        self._cache: Dict[str, _CacheEntry] = {}
        self._pending: Dict[str, "asyncio.Future[AnalysisResult]"] = {}
        self._generation = 0

    @property
    def remote_enabled(self) -> bool:
        return self._remote is not None

    async def aclose(self) -> None:
        if self._remote is not None:
            await self._remote.aclose()

    def clear_cache(self) -> None:
        """Drop every cached result; in-flight results will not be cached."""
        self._cache.clear()
        self._generation += 1
        logger.debug("Analysis cache cleared")

    def _get_cached(self, key: str, entry_count: int) -> Optional[AnalysisResult]:
        cached = self._cache.get(key)
        if cached is None:
            return None
        if cached.entry_count != entry_count:
            del self._cache[key]
            return None
        if self._clock() - cached.computed_at > self._ttl:
            del self._cache[key]
            return None
        return cached.result

    async def analyze(self, request: AnalysisRequest) -> AnalysisResult:
        """Return a cached, in-flight or freshly computed result for *request*."""
        key = fingerprint(request)

        cached = self._get_cached(key, len(request.entries))
        if cached is not None:
            logger.debug("Using cached %s analysis", request.kind.value)
            return cached

        pending = self._pending.get(key)
        if pending is not None and not pending.done():
            logger.debug("Waiting for pending %s analysis", request.kind.value)
            return await asyncio.shield(pending)

        logger.info("Running %s analysis on %d entries", request.kind.value, len(request.entries))
        task = asyncio.ensure_future(self._perform(request, key))
        self._pending[key] = task

        def _done(t: "asyncio.Future[AnalysisResult]", k: str = key) -> None:
            if self._pending.get(k) is t:
                del self._pending[k]

        task.add_done_callback(_done)
        return await asyncio.shield(task)

    async def _perform(self, request: AnalysisRequest, key: str) -> AnalysisResult:
        generation = self._generation
        result: Optional[AnalysisResult] = None
        cacheable = True

        if request.kind is AnalysisKind.SENTIMENT and self._remote_eligible(request.entries):
            if await self._limiter.acquire():
                try:
                    result = await self._remote_sentiment(request.entries)
                except RemoteUnavailableError as exc:
                    logger.warning("Remote sentiment failed, falling back to local analysis: %s", exc)
                    cacheable = False
            else:
                logger.info("Remote rate limit reached; using local sentiment analysis")

        if result is None:
            result = self._run_local(request)

        if cacheable and generation == self._generation:
            self._cache[key] = _CacheEntry(result, result.computed_at, len(request.entries))
        return result

    def _remote_eligible(self, entries: Sequence[Entry]) -> bool:
        if self._remote is None:
            return False
        return any(e.text and e.text.strip() for e in entries)

    def _run_local(self, request: AnalysisRequest) -> AnalysisResult:
        now = self._clock()
        if request.kind is AnalysisKind.SENTIMENT:
            return analyze_sentiment_locally(request.entries, now)
        if request.kind is AnalysisKind.PATTERNS:
            return analyze_patterns_locally(request.entries, now)
        return analyze_trends_locally(request.entries, now)

    async def _remote_sentiment(self, entries: Sequence[Entry]) -> AnalysisResult:
        # only plaintext leaves the device
        items = [(i, e.text) for i, e in enumerate(entries) if e.text and e.text.strip()]
        reply = await self._remote.complete(build_sentiment_prompt(items))
        payload = parse_sentiment_payload(reply)

        allowed = {i for i, _ in items}
        seen = set()
        entry_sentiments = []
        for item in payload.entry_sentiments:
            if item.entry_index not in allowed:
                raise MalformedRemoteResponseError(
                    f"Remote response referenced unknown entry index {item.entry_index}"
                )
            if item.entry_index in seen:
                raise MalformedRemoteResponseError(
                    f"Remote response repeated entry index {item.entry_index}"
                )
            seen.add(item.entry_index)
            entry_sentiments.append(EntrySentiment(
                entries[item.entry_index].id, item.sentiment, item.score, item.confidence,
            ))

        return AnalysisResult(
            kind=AnalysisKind.SENTIMENT,
            data=SentimentData(payload.overall_sentiment, payload.sentiment_score, entry_sentiments),
            confidence=REMOTE_SENTIMENT_CONFIDENCE,
            computed_at=self._clock(),
            source="remote",
        )
