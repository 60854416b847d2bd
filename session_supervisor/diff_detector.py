"""Diffing of successive pane captures and idle-prompt detection."""

import logging
import re
from typing import Iterable, Optional, Pattern


# Patterns that indicate the session is back at an idle prompt.
# Matched in order against the whitespace-trimmed capture.
PROMPT_PATTERNS = [
    r'> $',              # Claude prompt line (inner line keeps its trailing space)
    r'claude>$',         # Custom named prompt
    r'\$ $',             # Shell prompt
    # Trimming strips the trailing space of the last line, so match the bare
    # prompt too, but only as a whole line ("user@host:~$", "~/src$", ">")
    r'^>\Z',
    r'^(?:\S*[@:~]\S*)?\$\Z',
]

_prompt_res = [re.compile(p, re.MULTILINE) for p in PROMPT_PATTERNS]


class PromptMatcher:
    """Ordered list of patterns tested against trimmed output."""

    def __init__(self, patterns: Optional[Iterable[str]] = None, flags: int = re.MULTILINE):
        if patterns is None:
            self.patterns: list[Pattern[str]] = list(_prompt_res)
        else:
            self.patterns = [re.compile(p, flags) for p in patterns]

    def match(self, text: str) -> Optional[str]:
        """Return the source of the first matching pattern, or None."""
        for pattern in self.patterns:
            if pattern.search(text):
                return pattern.pattern
        return None


class DiffDetector:
    """Stateless comparisons between two pane captures."""

    def __init__(self, matcher: Optional[PromptMatcher] = None, logger: Optional[logging.Logger] = None):
        self.matcher = matcher or PromptMatcher()
        self.logger = logger or logging.getLogger(__name__)

    def extract_new_content(self, previous: str, current: str) -> str:
        """
        Return the part of ``current`` that was appended after ``previous``.

        Falls back to the whole of ``current`` when the capture is not a
        simple append (pane scrolled or was cleared).
        """
        if not previous:
            return current

        if current.startswith(previous):
            new_content = current[len(previous):]
            self.logger.debug(
                f"Extracted new content: previous={len(previous)} "
                f"current={len(current)} new={len(new_content)}"
            )
            return new_content

        self.logger.warning("Capture is not an append of the previous one, returning full output")
        return current

    def detect_response_end(self, text: str) -> bool:
        """Check whether the capture ends at an idle prompt."""
        trimmed = text.strip()
        pattern = self.matcher.match(trimmed)
        if pattern is not None:
            self.logger.debug(f"Response end detected (pattern={pattern!r})")
            return True
        return False

    @staticmethod
    def has_changed(previous: str, current: str) -> bool:
        return previous != current
