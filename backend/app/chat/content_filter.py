"""Word-filter moderation for message text.

Messages containing a configured banned word are not rejected: each match
is masked (``darn`` -> ``****``) and the message is flagged, then delivered
as usual. Matching is case-insensitive and whole-word.
"""
import re
from dataclasses import dataclass
from typing import Iterable, Optional


@dataclass
class FilterResult:
    """Result of filtering a piece of text.

    Attributes:
        text: Text with every banned word masked.
        flagged: Whether anything was masked.
    """
    text: str
    flagged: bool = False

    def __bool__(self) -> bool:
        """True when the text was clean."""
        return not self.flagged


class ContentFilter:
    """Masks banned words in message text."""

    def __init__(self, banned_words: Iterable[str] = (), mask_char: str = "*") -> None:
        words = sorted({w.strip().lower() for w in banned_words if w and w.strip()}, key=len, reverse=True)
        self.mask_char = mask_char or "*"
        self._pattern: Optional[re.Pattern] = None
        if words:
            alternation = "|".join(re.escape(w) for w in words)
            self._pattern = re.compile(rf"(?<!\w)(?:{alternation})(?!\w)", re.IGNORECASE)

    def apply(self, text: str) -> FilterResult:
        if self._pattern is None or not text:
            return FilterResult(text=text)
        masked, hits = self._pattern.subn(lambda m: self.mask_char * len(m.group(0)), text)
        return FilterResult(text=masked, flagged=hits > 0)
