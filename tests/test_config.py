"""Tests for settings consistency checks."""

import pytest

from config import ensure_valid_settings, validate_settings
from errors import ArticleGenerationError, ErrorKind
from fakes import make_settings


def test_defaults_are_valid(cfg):
    """Test that the shipped defaults pass validation."""
    assert validate_settings(cfg) == []
    assert ensure_valid_settings(cfg) is cfg


def test_storage_threshold_above_display_is_rejected():
    """Test that a storage threshold stricter than the display threshold is reported."""
    errors = validate_settings(make_settings(min_relevance_for_storage=80, min_relevance_for_results=70))
    assert any("min_relevance_for_storage" in e for e in errors)


def test_exclusion_threshold_must_exceed_storage():
    """Test that an auto-exclusion threshold that could never fire is reported."""
    errors = validate_settings(make_settings(auto_exclude_quality_threshold=10, min_quality_for_storage=15))
    assert "auto_exclude_quality_threshold must be > min_quality_for_storage" in errors


def test_tiers_must_decrease():
    """Test that tier thresholds out of order are reported."""
    errors = validate_settings(make_settings(tier_good=90))
    assert any("tier thresholds" in e for e in errors)


def test_every_violation_is_reported_at_once():
    """Test that one CONFIG_ERROR lists all problems."""
    bad = make_settings(min_sections=20, batch_concurrency=0, scout_temperature=3.5)
    with pytest.raises(ArticleGenerationError) as info:
        ensure_valid_settings(bad)

    assert info.value.kind is ErrorKind.CONFIG_ERROR
    message = info.value.message
    assert "min_sections" in message
    assert "batch_concurrency" in message
    assert "scout_temperature" in message


def test_settings_are_frozen(cfg):
    """Test that settings cannot be mutated after construction."""
    with pytest.raises(Exception):
        cfg.max_sources = 1
