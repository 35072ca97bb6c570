"""Backend-reply classification: branding removal and acknowledgment detection.

Both checks are plain pattern matching over the reply text. A result message that
happens to contain an acknowledgment phrase is treated as an acknowledgment; that
misclassification is accepted.
"""

from __future__ import annotations

import re
from collections.abc import Sequence
from dataclasses import dataclass, field

DEFAULT_BRANDING_PATTERNS: tuple[str, ...] = (
    r"\[Manus\]",
    r"Manus:",
    r"Powered by Manus",
    r"manus\.im",
    r"manus\.bot",
    r"— Manus",
    r"--\s*Manus",
)

DEFAULT_ACKNOWLEDGMENT_PHRASES: tuple[str, ...] = (
    "task has been started",
    "working on your request",
    "processing your email",
    "received your request",
    "task is now running",
    "i have received your task",
    "and started working",
    "i will do the following",
)

_EXCESS_BLANK_LINES = re.compile(r"\n{3,}")


@dataclass(frozen=True)
class ReplyHeuristics:
    branding_patterns: Sequence[str] = DEFAULT_BRANDING_PATTERNS
    acknowledgment_phrases: Sequence[str] = DEFAULT_ACKNOWLEDGMENT_PHRASES
    _compiled: tuple[re.Pattern[str], ...] = field(init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        compiled = tuple(re.compile(p, re.IGNORECASE) for p in self.branding_patterns)
        object.__setattr__(self, "_compiled", compiled)

    def strip_branding(self, text: str) -> str:
        result = text
        for pattern in self._compiled:
            result = pattern.sub("", result)
        return _EXCESS_BLANK_LINES.sub("\n\n", result).strip()

    def is_acknowledgment(self, body: str) -> bool:
        lowered = body.lower()
        return any(phrase in lowered for phrase in self.acknowledgment_phrases)
