from __future__ import annotations

from typing import Iterable, Protocol, Tuple

MISSING_ROLLOUT_PHRASE = "missing rollout path for thread"
_STATE_DB_MARKERS = ("state db", "state_db", "statedb", "state database")


class StaleSessionDetector(Protocol):
    def matches(self, text: str) -> bool:
        ...


class RolloutMissingDetector:
    """
    Recognizes the agent's "thread rollout file is gone" failure.

    The agent reports it either as the exact phrase or as a state-db error
    that mentions a missing rollout for a thread.
    """

    def matches(self, text: str) -> bool:
        if not text:
            return False
        lowered = text.lower()
        if MISSING_ROLLOUT_PHRASE in lowered:
            return True
        return (
            any(marker in lowered for marker in _STATE_DB_MARKERS)
            and "missing rollout" in lowered
            and "thread" in lowered
        )


class PhraseDetector:
    def __init__(self, phrases: Iterable[str]) -> None:
        self._phrases: Tuple[str, ...] = tuple(
            p.strip().lower() for p in phrases if p and p.strip()
        )

    def matches(self, text: str) -> bool:
        if not text or not self._phrases:
            return False
        lowered = text.lower()
        return any(phrase in lowered for phrase in self._phrases)


class AnyOfDetector:
    def __init__(self, *detectors: StaleSessionDetector) -> None:
        self._detectors = detectors

    def matches(self, text: str) -> bool:
        return any(detector.matches(text) for detector in self._detectors)


DEFAULT_DETECTOR: StaleSessionDetector = RolloutMissingDetector()


def build_detector(extra_phrases: Iterable[str] = ()) -> StaleSessionDetector:
    phrases = [p for p in extra_phrases if p and p.strip()]
    if not phrases:
        return DEFAULT_DETECTOR
    return AnyOfDetector(DEFAULT_DETECTOR, PhraseDetector(phrases))
