"""
Lightweight content screening for outbound messages.

Pure and synchronous: a match blocks the message before any rate window is
touched.
"""
import re
from dataclasses import dataclass, field

from wahub.config import settings


_LINK_SCHEME = re.compile(r"\b([a-z][a-z0-9+.\-]*):(?=\S)", re.IGNORECASE)


@dataclass(frozen=True)
class ScreenResult:
    flagged: bool
    rule: str | None = None
    detail: str | None = None


@dataclass
class ContentScreen:
    """Matches messages against spam keywords, character floods and link schemes."""

    spam_keywords: list[str] = field(default_factory=lambda: list(settings.SPAM_KEYWORDS))
    blocked_link_schemes: list[str] = field(
        default_factory=lambda: list(settings.BLOCKED_LINK_SCHEMES)
    )
    max_repeated_chars: int = settings.MAX_REPEATED_CHARS

    def __post_init__(self):
        self._keywords = [keyword.lower() for keyword in self.spam_keywords]
        self._schemes = {scheme.lower() for scheme in self.blocked_link_schemes}
        # A run longer than max_repeated_chars of one non-space character
        self._repetition = re.compile(
            r"(\S)\1{%d,}" % max(self.max_repeated_chars, 1)
        )

    def screen(self, content: str | None) -> ScreenResult:
        if not content:
            return ScreenResult(flagged=False)

        lowered = content.lower()

        for keyword in self._keywords:
            if keyword in lowered:
                return ScreenResult(flagged=True, rule="spam_keyword", detail=keyword)

        match = self._repetition.search(content)
        if match:
            return ScreenResult(flagged=True, rule="repeated_characters", detail=match.group(1))

        for scheme_match in _LINK_SCHEME.finditer(lowered):
            scheme = scheme_match.group(1)
            if scheme in self._schemes:
                return ScreenResult(flagged=True, rule="link_scheme", detail=scheme)

        return ScreenResult(flagged=False)
