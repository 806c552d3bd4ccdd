"""Multi-pass recognition: run every image variant, score, and merge the best fields."""

import asyncio
import functools
import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional, Union

from .config import PipelineSettings, ScoringWeights
from .errors import AllAttemptsFailedError, EngineInitializationError
from .models import ExtractedFields, ImageVariant, RecognitionAttempt
from .ocr import RecognitionParams, SharedRecognitionEngine
from .parse import ReceiptFieldExtractor
from .preprocess import ImageVariantBuilder

logger = logging.getLogger(__name__)

_WHITESPACE = re.compile(r'\s+')

MERGED_FIELDS = ('merchant', 'date', 'total')


def compact_text_length(text: str) -> int:
    """Length of the text with all whitespace removed."""
    return len(_WHITESPACE.sub('', text or ''))


def score_extracted_fields(fields: ExtractedFields,
                           confidence: Optional[float],
                           weights: Optional[ScoringWeights] = None) -> float:
    """
    Heuristic trustworthiness of one attempt's fields.

    Found fields dominate; text volume and engine confidence add small,
    capped bonuses. Pure function of its arguments.
    """
    w = weights or ScoringWeights()
    score = 0.0

    if fields.date is not None:
        score += w.quality_date

    if fields.total is not None:
        score += w.quality_total
        if fields.total > w.quality_large_total_threshold:
            score += w.quality_large_total_penalty

    if fields.merchant:
        score += w.quality_merchant
        if len(fields.merchant) >= w.quality_long_merchant_length:
            score += w.quality_long_merchant

    score += min(w.quality_text_max, compact_text_length(fields.raw_text) / w.quality_text_divisor)

    if confidence is not None:
        score += min(w.quality_confidence_max, confidence / w.quality_confidence_divisor)

    return round(score, 2)


def attempt_rank_key(attempt: RecognitionAttempt) -> tuple:
    """Sort key where larger means better."""
    confidence = attempt.confidence if attempt.confidence is not None else float('-inf')
    return (attempt.quality_score, confidence, attempt.compact_text_length)


def compare_attempt_quality(a: RecognitionAttempt, b: RecognitionAttempt) -> int:
    """cmp-style comparison: negative when ``a`` ranks ahead of ``b``."""
    key_a, key_b = attempt_rank_key(a), attempt_rank_key(b)
    return (key_a < key_b) - (key_a > key_b)


def rank_attempts(attempts: List[RecognitionAttempt]) -> List[RecognitionAttempt]:
    """Best attempt first; equal attempts keep their variant order."""
    return sorted(attempts, key=functools.cmp_to_key(compare_attempt_quality))


def merge_attempts(attempts: List[RecognitionAttempt]) -> ExtractedFields:
    """
    Combine attempts into one result.

    The top-ranked attempt supplies the raw text; each field comes from
    the highest-ranked attempt that found it.
    """
    if not attempts:
        raise AllAttemptsFailedError()

    ranked = rank_attempts(attempts)
    base = ranked[0].fields
    merged = {}
    for name in MERGED_FIELDS:
        merged[name] = next(
            (getattr(a.fields, name) for a in ranked if getattr(a.fields, name) is not None),
            getattr(base, name),
        )
    return ExtractedFields(raw_text=base.raw_text, **merged)


@dataclass
class OrchestrationResult:
    """Merged fields plus the attempts they were drawn from."""
    fields: ExtractedFields
    attempts: List[RecognitionAttempt] = field(default_factory=list)
    failed_strategies: List[str] = field(default_factory=list)

    @property
    def best_attempt(self) -> RecognitionAttempt:
        return rank_attempts(self.attempts)[0]


class RecognitionOrchestrator:
    """Runs each image variant through the shared engine and merges the results."""

    def __init__(self,
                 engine: SharedRecognitionEngine,
                 variant_builder: Optional[ImageVariantBuilder] = None,
                 extractor: Optional[ReceiptFieldExtractor] = None,
                 settings: Optional[PipelineSettings] = None):
        """
        Args:
            engine: Shared, access-serialized engine handle
            variant_builder: Produces the image variants; built from settings when omitted
            extractor: Field extractor; built from the settings' weights when omitted
            settings: Pipeline settings; defaults when omitted
        """
        self.settings = settings or PipelineSettings()
        self.engine = engine
        self.variant_builder = variant_builder or ImageVariantBuilder(
            multi_pass=self.settings.multi_pass,
            max_width=self.settings.max_image_width,
            binary_threshold=self.settings.binary_threshold,
        )
        self.extractor = extractor or ReceiptFieldExtractor(weights=self.settings.scoring)

    async def process(self, image_path: Union[str, Path],
                      cancel_event: Optional[asyncio.Event] = None) -> ExtractedFields:
        """Recognize a receipt and return its merged fields."""
        result = await self.run(image_path, cancel_event=cancel_event)
        return result.fields

    async def run(self, image_path: Union[str, Path],
                  cancel_event: Optional[asyncio.Event] = None) -> OrchestrationResult:
        """
        Try every variant of one receipt image.

        Args:
            image_path: Receipt image or PDF
            cancel_event: When set, variants not yet started are skipped

        Returns:
            OrchestrationResult with merged fields and all successful attempts

        Raises:
            AllAttemptsFailedError: No variant produced an attempt
            EngineInitializationError: The engine could not be created
        """
        image_path = Path(image_path)
        variants = await asyncio.to_thread(self.variant_builder.build, image_path)

        attempts: List[RecognitionAttempt] = []
        failures: List[str] = []
        errors: List[BaseException] = []

        for variant in variants:
            if cancel_event is not None and cancel_event.is_set():
                logger.info(f"Cancelled {image_path.name} before variant {variant.strategy_name}")
                break
            try:
                attempt = await self.run_attempt(variant)
            except EngineInitializationError:
                raise
            except Exception as e:
                logger.warning(f"Attempt {variant.strategy_name} failed for {image_path.name}: {e}")
                failures.append(variant.strategy_name)
                errors.append(e)
                continue
            attempts.append(attempt)

        if not attempts:
            raise AllAttemptsFailedError(errors=errors)

        merged = merge_attempts(attempts)
        best = rank_attempts(attempts)[0]
        logger.info(f"{image_path.name}: best={best.strategy_name} (score {best.quality_score}), "
                    f"merchant={merged.merchant}, date={merged.date}, total={merged.total}")
        return OrchestrationResult(fields=merged, attempts=attempts, failed_strategies=failures)

    async def run_attempt(self, variant: ImageVariant) -> RecognitionAttempt:
        """Recognize one variant and score what it yields."""
        params = RecognitionParams(
            segmentation_mode=variant.segmentation_mode,
            preserve_interword_spaces=True,
            dpi=self.settings.dpi,
            timeout=self.settings.attempt_timeout,
        )
        result = await self.engine.recognize(variant.image_data, params)

        fields = self.extractor.extract(result.text)
        attempt = RecognitionAttempt(
            strategy_name=variant.strategy_name,
            confidence=result.confidence,
            fields=fields,
            quality_score=score_extracted_fields(fields, result.confidence, self.settings.scoring),
            compact_text_length=compact_text_length(result.text),
        )
        logger.debug(f"Attempt {variant.strategy_name}: score={attempt.quality_score}, "
                     f"confidence={attempt.confidence}")
        return attempt
