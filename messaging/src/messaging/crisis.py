"""Flag text messages that contain crisis language so counselors can triage them."""

from __future__ import annotations

from typing import Iterable

CRISIS_KEYWORDS = (
    "suicide",
    "kill myself",
    "end my life",
    "want to die",
    "harm myself",
    "self-harm",
    "cutting",
    "overdose",
    "hanging",
    "jumping",
    "no reason to live",
)


def contains_crisis_language(text: str, keywords: Iterable[str] = CRISIS_KEYWORDS) -> bool:
    lowered = text.lower()
    return any(keyword.lower() in lowered for keyword in keywords)
