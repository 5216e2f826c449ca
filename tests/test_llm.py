"""Tests for Gemini reply parsing and cost accounting."""

from types import SimpleNamespace

import pytest

from models.usage import TokenUsage
from services.llm import GeminiClient, estimate_cost, parse_json_safe, resolve_pricing
from utils.cancellation import CancellationToken


@pytest.mark.parametrize("raw,expected", [
    ('{"approved": true}', {"approved": True}),
    ('```json\n{"x": 1}\n```', {"x": 1}),
    ('```\n[1, 2]\n```', [1, 2]),
    ('{"t": "a\x01b"}', {"t": "a b"}),
    ('{"issues": [1, 2], "suggestions": {"a": 3', {"issues": [1, 2]}),
])
def test_parse_json_safe(raw, expected):
    """Test that fenced, dirty and truncated replies still parse."""
    assert parse_json_safe(raw) == expected


@pytest.mark.parametrize("raw", ["not json at all", "", None])
def test_parse_json_safe_rejects_garbage(raw):
    """Test that text with nothing recoverable raises ValueError."""
    with pytest.raises(ValueError):
        parse_json_safe(raw)


def test_resolve_pricing_longest_prefix(cfg):
    """Test that the most specific model prefix wins and unknown models use the default."""
    assert resolve_pricing("gemini-2.5-flash-lite-preview", cfg.model_pricing, cfg.default_model_pricing) == (0.0001, 0.0004)
    assert resolve_pricing("gemini-2.5-flash-001", cfg.model_pricing, cfg.default_model_pricing) == (0.0003, 0.0025)
    assert resolve_pricing("other-model", cfg.model_pricing, cfg.default_model_pricing) == cfg.default_model_pricing


def test_estimate_cost(cfg):
    assert estimate_cost("gemini-2.5-flash", TokenUsage(input=1000, output=2000), cfg) == pytest.approx(0.0053)
    assert estimate_cost("gemini-2.5-pro", TokenUsage(), cfg) == 0.0


@pytest.mark.asyncio
async def test_gemini_client_result(cfg, monkeypatch):
    """Test that the SDK response becomes an LLMResult with parsed data, usage and cost."""
    client = GeminiClient("test-key", cfg)
    seen = {}

    def fake_generate(model, system, prompt, temperature, max_output_tokens, json_output):
        seen.update(model=model, system=system, json_output=json_output)
        return SimpleNamespace(
            text='{"approved": false}',
            usage_metadata=SimpleNamespace(prompt_token_count=1000, candidates_token_count=2000),
        )

    monkeypatch.setattr(client, "_generate_sync", fake_generate)

    result = await client.generate(
        model="gemini-2.5-flash", system="sys", prompt="p",
        temperature=0.2, max_output_tokens=100, json_output=True, cancel=CancellationToken(),
    )

    assert seen == {"model": "gemini-2.5-flash", "system": "sys", "json_output": True}
    assert result.data == {"approved": False}
    assert result.usage.total == 3000
    assert result.cost == pytest.approx(0.0053)
    assert result.model == "gemini-2.5-flash"
