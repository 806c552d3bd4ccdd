"""Tests for settings and scoring weights loading."""

import pytest
from receipt_pipeline.config import PipelineSettings, ScoringWeights, load_scoring_weights


class TestPipelineSettings:
    """Environment-driven settings."""

    def test_defaults(self):
        settings = PipelineSettings.from_env({})

        assert settings.engine == 'tesseract'
        assert settings.language == 'jpn+eng'
        assert settings.concurrency == 5
        assert settings.multi_pass is True
        assert settings.max_image_width == 1600
        assert settings.binary_threshold == 170
        assert settings.verbose is False
        assert settings.scoring == ScoringWeights()

    def test_overrides(self):
        settings = PipelineSettings.from_env({
            'OCR_ENGINE': 'YomiToku',
            'OCR_LANGUAGE': 'eng',
            'OCR_CONCURRENCY': '2',
            'OCR_MULTI_PASS': 'false',
            'OCR_MAX_IMAGE_WIDTH': '1200',
            'OCR_BINARY_THRESHOLD': '0',
            'OCR_VERBOSE': 'yes',
            'OCR_ATTEMPT_TIMEOUT': '12.5',
            'OCR_DEVICE': 'cuda',
        })

        assert settings.engine == 'yomitoku'
        assert settings.language == 'eng'
        assert settings.concurrency == 2
        assert settings.multi_pass is False
        assert settings.max_image_width == 1200
        assert settings.binary_threshold == 0
        assert settings.verbose is True
        assert settings.attempt_timeout == 12.5
        assert settings.device == 'cuda'

    def test_blank_values_use_defaults(self):
        settings = PipelineSettings.from_env({'OCR_CONCURRENCY': '', 'OCR_MULTI_PASS': ' '})

        assert settings.concurrency == 5
        assert settings.multi_pass is True

    @pytest.mark.parametrize("env", [
        {'OCR_ENGINE': 'easyocr'},
        {'OCR_CONCURRENCY': '0'},
        {'OCR_CONCURRENCY': 'five'},
        {'OCR_MULTI_PASS': 'maybe'},
        {'OCR_BINARY_THRESHOLD': '256'},
        {'OCR_ATTEMPT_TIMEOUT': '-1'},
    ])
    def test_invalid_values(self, env):
        with pytest.raises(ValueError):
            PipelineSettings.from_env(env)

    def test_scoring_rules_from_env(self, tmp_path):
        rules = tmp_path / "rules.yml"
        rules.write_text("quality:\n  total: 12\n", encoding='utf-8')

        settings = PipelineSettings.from_env({'OCR_SCORING_RULES': str(rules)})

        assert settings.scoring.quality_total == 12


class TestScoringWeights:
    """YAML scoring rules."""

    def test_packaged_rules_match_defaults(self):
        assert load_scoring_weights() == ScoringWeights()

    def test_sections_are_flattened(self, tmp_path):
        rules = tmp_path / "rules.yml"
        rules.write_text("date:\n  negative_keyword: -10\n  header_lines: 2\n", encoding='utf-8')

        weights = load_scoring_weights(rules)

        assert weights.date_negative_keyword == -10
        assert weights.date_header_lines == 2
        assert isinstance(weights.date_header_lines, int)
        assert weights.quality_date == 8

    def test_unknown_keys_ignored(self, tmp_path):
        rules = tmp_path / "rules.yml"
        rules.write_text("date:\n  bogus: 1\n", encoding='utf-8')

        assert load_scoring_weights(rules) == ScoringWeights()

    def test_invalid_value(self, tmp_path):
        rules = tmp_path / "rules.yml"
        rules.write_text("quality:\n  date: high\n", encoding='utf-8')

        with pytest.raises(ValueError):
            load_scoring_weights(rules)

    def test_explicit_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            load_scoring_weights(tmp_path / "missing.yml")

    def test_empty_file(self, tmp_path):
        rules = tmp_path / "rules.yml"
        rules.write_text("", encoding='utf-8')

        assert load_scoring_weights(rules) == ScoringWeights()

    def test_fractional_count_rejected(self, tmp_path):
        """Test that a count weight is not silently truncated."""
        rules = tmp_path / "rules.yml"
        rules.write_text("date:\n  header_lines: 4.5\n", encoding='utf-8')

        with pytest.raises(ValueError, match="header_lines"):
            load_scoring_weights(rules)

    def test_whole_float_count_accepted(self):
        weights = ScoringWeights.from_mapping({'date_header_lines': 3.0, 'quality_total': 12})

        assert weights.date_header_lines == 3
        assert isinstance(weights.date_header_lines, int)
        assert weights.quality_total == 12.0
