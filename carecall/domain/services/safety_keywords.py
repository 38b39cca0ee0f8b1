"""
Safety Keyword Backstop
Scans user transcripts for distress phrases, independent of the model
"""
import re
from typing import Dict, List, Optional, Tuple


SAFETY_KEYWORDS: Dict[str, List[str]] = {
    "high": [
        "suicide",
        "kill myself",
        "end my life",
        "end it all",
        "want to die",
        "better off dead",
        "hurt myself",
        "harm myself",
        "self-harm",
        "self harm",
        "cut myself",
        "don't want to live",
        "no reason to live",
        "take my own life",
        # Spanish
        "suicidio",
        "matarme",
        "quiero morir",
        "acabar con todo",
        "no quiero vivir",
        "hacerme daño",
    ],
    "medium": [
        "hopeless",
        "give up",
        "giving up",
        "not worth living",
        "what's the point",
        "can't go on",
        "can't take it anymore",
        "disappear",
        "nobody would miss me",
        "burden to everyone",
        # Spanish
        "sin esperanza",
        "no vale la pena",
        "rendirme",
    ],
    "low": [
        "so lonely",
        "all alone",
        "nobody cares",
        "don't care anymore",
        "tired of everything",
        "exhausted with life",
        "nothing matters",
        # Spanish
        "muy solo",
        "muy sola",
        "nadie me quiere",
    ],
}

TIER_ORDER = ("high", "medium", "low")


def _normalize(text: str) -> str:
    text = text.lower().replace("’", "'")
    return re.sub(r"\s+", " ", text).strip()


def detect_safety_tier(transcript: str) -> Optional[Tuple[str, str]]:
    """
    Highest-severity match in a transcript.

    Returns:
        (tier, keyword) or None
    """
    if not transcript:
        return None
    normalized = _normalize(transcript)
    for tier in TIER_ORDER:
        for keyword in SAFETY_KEYWORDS[tier]:
            if keyword in normalized:
                return tier, keyword
    return None


class SafetyMonitor:
    """Per-call detector that reports each tier at most once."""

    def __init__(self):
        self._seen_tiers = set()

    def check(self, transcript: str) -> Optional[Tuple[str, str]]:
        match = detect_safety_tier(transcript)
        if match is None or match[0] in self._seen_tiers:
            return None
        self._seen_tiers.add(match[0])
        return match
