"""Heuristic text metrics. Explicit markers win; anything missing is inferred.

Every metric lands in [0, 1]. extract() never raises: text with no words at
all yields the neutral 0.5 everywhere.
"""

from __future__ import annotations

import re

METRIC_NAMES = ("innovation", "repetition", "tone", "structure",
                "creativity", "coherence")
NEUTRAL = 0.5

_ALIASES = {
    "innovation": ("INNOVATION_SCORE", "INNOVATION", "创新度", "创新指数"),
    "repetition": ("REPETITION_SCORE", "REPETITION", "重复度", "重复指数"),
    "tone": ("TONE", "情感", "语调"),
    "structure": ("STRUCTURE_SCORE", "STRUCTURE", "结构度", "结构完整性"),
    "creativity": ("CREATIVITY_INDEX", "CREATIVITY", "创造力", "创造指数"),
    "coherence": ("COHERENCE_LEVEL", "COHERENCE", "连贯性", "逻辑性"),
}

_NUMBER = r"([0-9]*\.?[0-9]+)"
_PATTERNS = {
    name: re.compile(
        r"(?<![A-Za-z_])(?:" + "|".join(map(re.escape, aliases)) + r")\s*[:：]\s*"
        + (r"(\S+)" if name == "tone" else _NUMBER),
        re.IGNORECASE,
    )
    for name, aliases in _ALIASES.items()
}

TONE_WORDS = {
    "positive": 0.8, "optimistic": 0.8, "upbeat": 0.8, "happy": 0.9,
    "neutral": 0.5, "calm": 0.5, "plain": 0.5,
    "negative": 0.2, "pessimistic": 0.2, "sad": 0.2, "depressed": 0.1,
    "积极": 0.8, "正面": 0.8, "乐观": 0.8, "开心": 0.9,
    "中性": 0.5, "平静": 0.5, "普通": 0.5,
    "消极": 0.2, "负面": 0.2, "悲观": 0.2, "沮丧": 0.1,
}

_WORD = re.compile(r"\w+")
_SENTENCE_END = re.compile(r"[。！？.!?]")
_POSITIVE_CHARS = re.compile(r"[好棒优秀精彩美妙]")
_NEGATIVE_CHARS = re.compile(r"[坏差错误失败糟糕]")
_POSITIVE_WORDS = frozenset({
    "good", "great", "excellent", "wonderful", "amazing", "brilliant",
    "beautiful", "happy", "success", "successful", "nice",
})
_NEGATIVE_WORDS = frozenset({
    "bad", "poor", "wrong", "error", "fail", "failed", "failure",
    "terrible", "awful", "sad", "broken",
})
_YIN_CHARS = re.compile(r"[静柔慢缓温和平稳内敛]")
_YANG_CHARS = re.compile(r"[动刚快急热烈激进外向]")
_YIN_WORDS = frozenset({"calm", "gentle", "slow", "soft", "quiet", "steady", "still"})
_YANG_WORDS = frozenset({"fast", "fierce", "bold", "hot", "wild", "swift", "strong"})
_CONNECTORS = re.compile(
    r"[因此所以但是然而不过而且并且]|\b(?:therefore|however|but|moreover|because|thus)\b",
    re.IGNORECASE,
)


def clamp(value: float, low: float = 0.0, high: float = 1.0) -> float:
    return max(low, min(high, value))


def parse_tone(value: str) -> float:
    """Numeric tone or a tone word. Unknown words are neutral."""
    try:
        return clamp(float(value))
    except ValueError:
        return TONE_WORDS.get(value.strip().lower(), NEUTRAL)


def _markers(text: str) -> dict[str, float]:
    found: dict[str, float] = {}
    for name, pattern in _PATTERNS.items():
        match = pattern.search(text)
        if match is None:
            continue
        raw = match.group(1)
        if name == "tone":
            found[name] = parse_tone(raw.rstrip(",;.。，"))
        else:
            found[name] = clamp(float(raw))
    return found


def _innovation(words: list[str]) -> float:
    distinct = len({w.lower() for w in words})
    return min(1.0, 2 * distinct / max(len(words), 1))


def _repetition(text: str) -> float:
    sentences = [s.strip() for s in _SENTENCE_END.split(text) if s.strip()]
    return 1 - len(set(sentences)) / max(len(sentences), 1)


def _tone(text: str, words: list[str]) -> float:
    lowered = [w.lower() for w in words]
    positive = (len(_POSITIVE_CHARS.findall(text))
                + sum(1 for w in lowered if w in _POSITIVE_WORDS))
    negative = (len(_NEGATIVE_CHARS.findall(text))
                + sum(1 for w in lowered if w in _NEGATIVE_WORDS))
    if positive > negative:
        return 0.8
    if negative > positive:
        return 0.2
    return NEUTRAL


def extract(text: str) -> dict[str, float]:
    """Metric snapshot for one blob of text."""
    text = text or ""
    words = _WORD.findall(text)
    if not words:
        return dict.fromkeys(METRIC_NAMES, NEUTRAL)

    metrics = _markers(text)
    if metrics.get("innovation") is None:
        metrics["innovation"] = _innovation(words)
    if metrics.get("repetition") is None:
        metrics["repetition"] = _repetition(text)
    if metrics.get("tone") is None:
        metrics["tone"] = _tone(text, words)
    for name in ("structure", "creativity", "coherence"):
        metrics.setdefault(name, NEUTRAL)
    return {name: clamp(metrics[name]) for name in METRIC_NAMES}


# ── Auxiliary scalars ──────────────────────────────────────────────────


def structure_score(text: str) -> float:
    """Module marker, paragraphing and connectors. Capped at 1."""
    text = text or ""
    score = 0.0
    if "MODULES:" in text or "模块:" in text:
        score += 0.3
    if len([p for p in text.split("\n") if p.strip()]) >= 3:
        score += 0.3
    score += min(0.4, 0.1 * len(_CONNECTORS.findall(text)))
    return min(1.0, score)


def yin_yang_balance(text: str) -> float:
    """min/max of yin vs yang marker counts; 0.5 when neither appears."""
    text = text or ""
    lowered = [w.lower() for w in _WORD.findall(text)]
    yin = len(_YIN_CHARS.findall(text)) + sum(1 for w in lowered if w in _YIN_WORDS)
    yang = len(_YANG_CHARS.findall(text)) + sum(1 for w in lowered if w in _YANG_WORDS)
    if yin + yang == 0:
        return NEUTRAL
    return min(yin, yang) / max(yin, yang)


def tone_direction(tone: float) -> int:
    if tone > 0.6:
        return 1
    if tone < 0.4:
        return -1
    return 0
