"""Transaction date extraction with Japanese era and multi-format support."""

import re
import logging
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta
from typing import Callable, List, Optional, Tuple

from ..config import ScoringWeights
from .base import BaseParser, ParseResult, ReceiptContext, normalize_date_text, split_lines

logger = logging.getLogger(__name__)

# Japanese era name, short markers, Gregorian offset (era year 1 = offset + 1)
ERA_TABLE: List[Tuple[str, Tuple[str, ...], int]] = [
    ('令和', ('R', 'r'), 2018),
    ('平成', ('H', 'h'), 1988),
    ('昭和', ('S', 's'), 1925),
]

DATE_POSITIVE_KEYWORDS = [
    '取引日時', '取引日', '購入日', '利用日', 'ご利用日',
    '会計日時', '発行日', '売上日時', '日時', '日付',
]

DATE_NEGATIVE_KEYWORDS = [
    '有効期限', '期限', '賞味', '消費', '製造',
    '生年月日', '支払期限', '振込期限', '納期',
]

TIME_OF_DAY_PATTERN = re.compile(r'\d{1,2}:\d{2}')


def _era_pattern(name: str, markers: Tuple[str, ...]) -> re.Pattern:
    alternatives = '|'.join(re.escape(m) for m in (name, *markers))
    return re.compile(
        rf'(?:{alternatives})\s*(\d{{1,2}})[./\-年]?\s*(\d{{1,2}})[./\-月]?\s*(\d{{1,2}})日?'
    )


@dataclass
class DateCandidate:
    """A plausible date found in the text, scored by its surroundings."""
    date: date
    line_index: int
    score: float
    pattern_type: str


class DateParser(BaseParser):
    """Specialized parser for extracting the transaction date from receipts."""

    def __init__(self,
                 weights: Optional[ScoringWeights] = None,
                 clock: Optional[Callable[[], datetime]] = None):
        """
        Initialize the date parser.

        Args:
            weights: Scoring weights; the packaged defaults when omitted
            clock: Returns "now"; used for two-digit years and future checks
        """
        super().__init__()
        self.weights = weights or ScoringWeights()
        self.clock = clock or datetime.now

        self.era_patterns = [
            (_era_pattern(name, markers), offset, name)
            for name, markers, offset in ERA_TABLE
        ]

        # (pattern, group order, pattern_type)
        self.date_patterns = [
            (re.compile(r'(20\d{2}|19\d{2})[./\-年](\d{1,2})[./\-月](\d{1,2})日?'), 'ymd', 'full_year'),
            (re.compile(r'(\d{2})[./\-](\d{1,2})[./\-](\d{1,2})'), 'ymd', 'short_year'),
            (re.compile(r'(\d{1,2})[./\-](\d{1,2})[./\-]((?:20\d{2}|19\d{2}|\d{2}))'), 'mdy', 'year_last'),
            (re.compile(r'((?:20\d{2}|19\d{2}))(\d{2})(\d{2})'), 'ymd', 'compact'),
        ]

    def parse(self, context: ReceiptContext, now: Optional[datetime] = None) -> Optional[ParseResult]:
        """
        Extract the most likely transaction date.

        Args:
            context: Receipt context with full text
            now: Reference time; defaults to the parser clock

        Returns:
            ParseResult with a ``datetime.date`` value, or None
        """
        now = now or self.clock()
        lines = split_lines(normalize_date_text(context.full_text))
        if not lines:
            return None

        candidates = self.find_candidates(lines, now)
        if not candidates:
            self.logger.debug("No valid date found in text")
            return None

        best = self.select_candidate(candidates, now)
        result = ParseResult(
            value=best.date,
            score=best.score,
            source_text=lines[best.line_index][:50],
            metadata={
                'pattern_type': best.pattern_type,
                'line_index': best.line_index,
                'candidates': len(candidates),
            }
        )
        self._log_result(result)
        return result

    def extract(self, text: str, now: Optional[datetime] = None) -> Optional[date]:
        result = self.parse(ReceiptContext(full_text=text or ''), now=now)
        return result.value if result else None

    def find_candidates(self, lines: List[str], now: datetime) -> List[DateCandidate]:
        """Collect every valid date in every line, scored in context."""
        candidates = []

        for line_idx, line in enumerate(lines):
            for pattern, offset, era_name in self.era_patterns:
                for match in pattern.finditer(line):
                    era_year, month, day = (int(g) for g in match.groups())
                    parsed = self._build_date(era_year + offset, month, day, now)
                    if parsed:
                        candidates.append(self._candidate(lines, line_idx, parsed, now, f'era:{era_name}'))

            for pattern, order, pattern_type in self.date_patterns:
                for match in pattern.finditer(line):
                    first, second, third = (int(g) for g in match.groups())
                    if order == 'mdy':
                        year, month, day = third, first, second
                    else:
                        year, month, day = first, second, third
                    parsed = self._build_date(year, month, day, now)
                    if parsed:
                        candidates.append(self._candidate(lines, line_idx, parsed, now, pattern_type))

        return candidates

    def select_candidate(self, candidates: List[DateCandidate], now: datetime) -> DateCandidate:
        """
        Pick the winning candidate.

        Dates on or before ``now`` win by score, then recency. If every
        candidate lies in the future, the best score wins, then the earliest.
        """
        past_or_today = [c for c in candidates if self._as_datetime(c.date, now) <= now]
        if past_or_today:
            return max(past_or_today, key=lambda c: (c.score, c.date))
        return min(candidates, key=lambda c: (-c.score, c.date))

    def score_candidate(self, lines: List[str], line_idx: int, candidate_date: date, now: datetime) -> float:
        """Score a date by the keywords around it and its distance from now."""
        w = self.weights
        previous_line = lines[line_idx - 1] if line_idx > 0 else ''
        next_line = lines[line_idx + 1] if line_idx + 1 < len(lines) else ''
        context = f"{previous_line} {lines[line_idx]} {next_line}".lower()

        score = 0.0
        if any(keyword.lower() in context for keyword in DATE_POSITIVE_KEYWORDS):
            score += w.date_positive_keyword
        if TIME_OF_DAY_PATTERN.search(context):
            score += w.date_time_of_day
        if any(keyword.lower() in context for keyword in DATE_NEGATIVE_KEYWORDS):
            score += w.date_negative_keyword
        if line_idx < w.date_header_lines:
            score += w.date_header_line

        ahead = self._as_datetime(candidate_date, now) - now
        if ahead > timedelta(days=w.date_future_grace_days):
            score += w.date_far_future
        elif ahead > timedelta(0):
            score += w.date_near_future

        if -ahead > timedelta(days=365 * w.date_stale_years):
            score += w.date_stale

        return score

    def _candidate(self, lines, line_idx, parsed, now, pattern_type) -> DateCandidate:
        return DateCandidate(
            date=parsed,
            line_index=line_idx,
            score=self.score_candidate(lines, line_idx, parsed, now),
            pattern_type=pattern_type,
        )

    def _build_date(self, year: int, month: int, day: int, now: datetime) -> Optional[date]:
        """Expand two-digit years and reject impossible calendar dates."""
        if year < 100:
            current_yy = now.year % 100
            year += 2000 if year <= current_yy + 1 else 1900
        try:
            return date(year, month, day)
        except ValueError:
            return None

    @staticmethod
    def _as_datetime(value: date, now: datetime) -> datetime:
        return datetime.combine(value, time.min, tzinfo=now.tzinfo)
