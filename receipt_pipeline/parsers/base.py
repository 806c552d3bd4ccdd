"""Base classes and text normalization shared by the field parsers."""

from abc import ABC, abstractmethod
from typing import Optional, Any, Dict, List
from dataclasses import dataclass, field
import logging
import re

logger = logging.getLogger(__name__)

_LINE_BREAK = re.compile(r'\r?\n')
_TABS_AND_WIDE_SPACES = re.compile(r'[\t　]+')
_SPACE_RUNS = re.compile(r'\s{2,}')

# Full-width digits and date punctuation seen in Japanese receipt prints
_DATE_TRANSLATION = str.maketrans({
    **{chr(0xFF10 + i): str(i) for i in range(10)},
    '／': '/',
    '．': '.',
    '－': '-',
    '―': '-',
    'ー': '-',
    '：': ':',
})


def normalize_line(line: str) -> str:
    """Collapse tabs, ideographic spaces and whitespace runs, then trim."""
    line = _TABS_AND_WIDE_SPACES.sub(' ', line)
    return _SPACE_RUNS.sub(' ', line).strip()


def split_lines(text: str) -> List[str]:
    """Split text into normalized, non-empty lines."""
    lines = (normalize_line(line) for line in _LINE_BREAK.split(text or ''))
    return [line for line in lines if line]


def normalize_date_text(text: str) -> str:
    """Convert full-width digits and date separators to their ASCII forms."""
    return (text or '').translate(_DATE_TRANSLATION)


@dataclass
class ParseResult:
    """Result of a parsing operation with its score and metadata."""
    value: Any
    score: float = 0.0
    source_text: str = ""
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class ReceiptContext:
    """Recognized receipt text prepared for parsing."""
    full_text: str
    lines: List[str] = None

    def __post_init__(self):
        if self.lines is None:
            self.lines = split_lines(self.full_text)


class BaseParser(ABC):
    """Base class for all receipt field parsers."""

    def __init__(self):
        self.logger = logging.getLogger(self.__class__.__name__)

    @abstractmethod
    def parse(self, context: ReceiptContext) -> Optional[ParseResult]:
        """
        Parse the specific field from receipt context.

        Args:
            context: Receipt context with text and normalized lines

        Returns:
            ParseResult with the field value, or None if the field is absent
        """
        pass

    def extract(self, text: str) -> Optional[Any]:
        """Parse raw text and return only the field value."""
        result = self.parse(ReceiptContext(full_text=text or ''))
        return result.value if result else None

    def _log_result(self, result: Optional[ParseResult]):
        """Log parsing result for debugging."""
        if result:
            self.logger.debug(f"Parsed: {result.value} (score: {result.score:.2f})")
        else:
            self.logger.debug("No value found")
