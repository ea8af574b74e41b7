"""Deterministic token estimation.

Token counts are an approximation used for savings estimates and scoring.
They are not tied to any model's tokenizer. Estimators are versioned so a
stored analysis records which approximation produced its numbers.
"""

import math
from dataclasses import dataclass
from typing import Protocol


class TokenEstimator(Protocol):
    """Protocol for token estimators."""

    version: str

    def count(self, text: str) -> int:
        """Estimate the token count of text."""
        ...


@dataclass(frozen=True)
class CharRatioEstimator:
    """Estimate tokens as ceil(characters / chars_per_token)."""

    chars_per_token: int = 4

    @property
    def version(self) -> str:
        return f"chars/{self.chars_per_token}-v1"

    def count(self, text: str) -> int:
        if not text:
            return 0
        return math.ceil(len(text) / self.chars_per_token)


DEFAULT_ESTIMATOR = CharRatioEstimator()


def estimate_tokens(text: str, estimator: TokenEstimator | None = None) -> int:
    """Estimate token count using the given (or default) estimator."""
    return (estimator or DEFAULT_ESTIMATOR).count(text)
