"""Pipeline settings and scoring weights.

Runtime tunables come from environment variables; the empirical scoring
weights used by the date parser and the attempt ranking live in a YAML
rules file so they can be retuned without touching code.
"""

import logging
import os
from dataclasses import dataclass, field, fields, replace
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

import yaml

logger = logging.getLogger(__name__)

DEFAULT_RULES_PATH = Path(__file__).parent / "rules" / "scoring.yml"

_TRUE_VALUES = {'1', 'true', 'yes', 'on'}
_FALSE_VALUES = {'0', 'false', 'no', 'off'}


@dataclass(frozen=True)
class ScoringWeights:
    """Empirical weights for date candidates and recognition attempts."""

    # Date candidate scoring
    date_positive_keyword: float = 4
    date_time_of_day: float = 1
    date_negative_keyword: float = -6
    date_header_line: float = 1
    date_header_lines: int = 4
    date_far_future: float = -4
    date_near_future: float = -1
    date_future_grace_days: int = 2
    date_stale: float = -2
    date_stale_years: int = 5

    # Attempt quality scoring
    quality_date: float = 8
    quality_total: float = 10
    quality_large_total_penalty: float = -2
    quality_large_total_threshold: int = 1_000_000
    quality_merchant: float = 6
    quality_long_merchant: float = 1
    quality_long_merchant_length: int = 4
    quality_text_max: float = 4
    quality_text_divisor: float = 120
    quality_confidence_max: float = 6
    quality_confidence_divisor: float = 20

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> 'ScoringWeights':
        """Override the defaults with any recognised keys in ``data``."""
        known = {f.name: f for f in fields(cls)}
        overrides = {}
        for key, value in data.items():
            if key not in known:
                logger.warning(f"Ignoring unknown scoring weight: {key}")
                continue
            message = f"Invalid value for scoring weight {key}: {value!r}"
            try:
                number = float(value)
            except (TypeError, ValueError) as e:
                raise ValueError(message) from e
            if known[key].type in (int, 'int'):
                # Counts must be whole; 4.5 is not rounded to 4
                if not number.is_integer():
                    raise ValueError(message)
                number = int(number)
            overrides[key] = number
        return replace(cls(), **overrides)


def load_scoring_weights(path: Optional[Path] = None) -> ScoringWeights:
    """
    Load scoring weights from a YAML rules file.

    Args:
        path: Rules file; the packaged ``rules/scoring.yml`` when omitted

    Returns:
        ScoringWeights with file values applied over the defaults
    """
    rules_path = Path(path) if path else DEFAULT_RULES_PATH
    try:
        with open(rules_path, 'r', encoding='utf-8') as f:
            data = yaml.safe_load(f) or {}
    except FileNotFoundError:
        if path is not None:
            raise
        logger.warning(f"Scoring rules not found at {rules_path}, using defaults")
        return ScoringWeights()

    if not isinstance(data, dict):
        raise ValueError(f"Scoring rules in {rules_path} must be a mapping")

    # Sections are for readability only; flatten them.
    flat: Dict[str, Any] = {}
    for key, value in data.items():
        if isinstance(value, dict):
            flat.update({f"{key}_{sub}": sub_value for sub, sub_value in value.items()})
        else:
            flat[key] = value

    weights = ScoringWeights.from_mapping(flat)
    logger.debug(f"Loaded scoring weights from {rules_path}")
    return weights


def _env_bool(env: Mapping[str, str], name: str, default: bool) -> bool:
    raw = env.get(name)
    if raw is None or raw.strip() == '':
        return default
    value = raw.strip().lower()
    if value in _TRUE_VALUES:
        return True
    if value in _FALSE_VALUES:
        return False
    raise ValueError(f"{name} must be a boolean, got {raw!r}")


def _env_int(env: Mapping[str, str], name: str, default: int, minimum: int = 1) -> int:
    raw = env.get(name)
    if raw is None or raw.strip() == '':
        return default
    try:
        value = int(raw)
    except ValueError as e:
        raise ValueError(f"{name} must be an integer, got {raw!r}") from e
    if value < minimum:
        raise ValueError(f"{name} must be >= {minimum}, got {value}")
    return value


def _env_float(env: Mapping[str, str], name: str, default: float) -> float:
    raw = env.get(name)
    if raw is None or raw.strip() == '':
        return default
    try:
        value = float(raw)
    except ValueError as e:
        raise ValueError(f"{name} must be a number, got {raw!r}") from e
    if value <= 0:
        raise ValueError(f"{name} must be positive, got {value}")
    return value


@dataclass(frozen=True)
class PipelineSettings:
    """Runtime tunables for recognition and job consumption."""
    engine: str = "tesseract"
    language: str = "jpn+eng"
    concurrency: int = 5
    multi_pass: bool = True
    max_image_width: int = 1600
    binary_threshold: int = 170
    verbose: bool = False
    dpi: int = 300
    attempt_timeout: float = 60.0
    device: str = "cpu"
    scoring: ScoringWeights = field(default_factory=ScoringWeights)

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None) -> 'PipelineSettings':
        """Build settings from ``OCR_*`` environment variables."""
        env = os.environ if env is None else env

        engine = env.get('OCR_ENGINE', cls.engine).strip().lower()
        if engine not in ('tesseract', 'yomitoku'):
            raise ValueError(f"OCR_ENGINE must be 'tesseract' or 'yomitoku', got {engine!r}")

        threshold = _env_int(env, 'OCR_BINARY_THRESHOLD', cls.binary_threshold, minimum=0)
        if threshold > 255:
            raise ValueError(f"OCR_BINARY_THRESHOLD must be <= 255, got {threshold}")

        rules = env.get('OCR_SCORING_RULES')

        return cls(
            engine=engine,
            language=env.get('OCR_LANGUAGE', cls.language) or cls.language,
            concurrency=_env_int(env, 'OCR_CONCURRENCY', cls.concurrency),
            multi_pass=_env_bool(env, 'OCR_MULTI_PASS', cls.multi_pass),
            max_image_width=_env_int(env, 'OCR_MAX_IMAGE_WIDTH', cls.max_image_width),
            binary_threshold=threshold,
            verbose=_env_bool(env, 'OCR_VERBOSE', cls.verbose),
            dpi=_env_int(env, 'OCR_DPI', cls.dpi),
            attempt_timeout=_env_float(env, 'OCR_ATTEMPT_TIMEOUT', cls.attempt_timeout),
            device=env.get('OCR_DEVICE', cls.device) or cls.device,
            scoring=load_scoring_weights(Path(rules) if rules else None),
        )
