"""
Gemini access for every agent.

All agents talk to an LLMClient: generate(...) -> LLMResult with text, the
parsed JSON object when json_output is requested, token usage and cost.
GeminiClient is the production implementation; tests pass fakes with the same
generate() signature.
"""
from google import genai
from google.genai import types
from pydantic import BaseModel
from typing import Any, Dict, Optional, Protocol, Tuple
from config import Settings
from models.usage import TokenUsage
from utils.cancellation import CancellationToken
import asyncio
import contextvars
import functools
import json
import logging
import re

logger = logging.getLogger(__name__)


class LLMResult(BaseModel):
    text: str = ""
    data: Any = None
    usage: TokenUsage = TokenUsage()
    cost: float = 0.0
    model: str = ""


class LLMClient(Protocol):
    async def generate(
        self,
        *,
        model: str,
        system: str,
        prompt: str,
        temperature: float,
        max_output_tokens: int,
        json_output: bool = False,
        cancel: Optional[CancellationToken] = None,
    ) -> LLMResult:
        ...


def resolve_pricing(model: str, pricing: Dict[str, Tuple[float, float]], default: Tuple[float, float]) -> Tuple[float, float]:
    """Longest table key that prefixes the model name wins."""
    best_key = None
    for key in pricing:
        if model.startswith(key) and (best_key is None or len(key) > len(best_key)):
            best_key = key
    return pricing[best_key] if best_key is not None else default


def estimate_cost(model: str, usage: TokenUsage, cfg: Settings) -> float:
    input_per_1k, output_per_1k = resolve_pricing(model, cfg.model_pricing, cfg.default_model_pricing)
    return (usage.input / 1000.0) * input_per_1k + (usage.output / 1000.0) * output_per_1k


def parse_json_safe(raw: str):
    """Parse JSON from a model reply, tolerating code fences, control characters and truncation."""
    text = (raw or "").strip()
    if text.startswith("```"):
        text = text.split("\n", 1)[1] if "\n" in text else ""
        if text.endswith("```"):
            text = text[:-3]
        text = text.strip()

    try:
        return json.loads(text)
    except json.JSONDecodeError:
        pass

    cleaned = re.sub(r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f]", " ", text)
    try:
        return json.loads(cleaned)
    except json.JSONDecodeError:
        pass

    # Truncated output: cut back to a closing bracket and close whatever is still open
    logger.warning(f"Attempting truncated JSON recovery (input length: {len(cleaned)})")
    cut_points = []
    in_string = False
    escape = False
    for i, ch in enumerate(cleaned):
        if escape:
            escape = False
        elif ch == "\\" and in_string:
            escape = True
        elif ch == '"':
            in_string = not in_string
        elif not in_string and ch in "}]":
            cut_points.append(i)

    for cut in reversed(cut_points[-50:]):
        head = cleaned[: cut + 1]
        try:
            return json.loads(head + _missing_closers(head))
        except json.JSONDecodeError:
            continue

    raise ValueError(f"Model returned unparseable JSON ({len(text)} chars)")


def _missing_closers(fragment: str) -> str:
    stack = []
    in_string = False
    escape = False
    for ch in fragment:
        if escape:
            escape = False
        elif ch == "\\" and in_string:
            escape = True
        elif ch == '"':
            in_string = not in_string
        elif in_string:
            continue
        elif ch in "{[":
            stack.append("}" if ch == "{" else "]")
        elif ch in "}]" and stack:
            stack.pop()
    return "".join(reversed(stack))


class GeminiClient:
    """google-genai wrapper; the blocking SDK call runs on the default executor."""

    def __init__(self, api_key: str, cfg: Settings):
        self._client = genai.Client(api_key=api_key)
        self._cfg = cfg

    def _generate_sync(
        self, model: str, system: str, prompt: str,
        temperature: float, max_output_tokens: int, json_output: bool,
    ):
        config = types.GenerateContentConfig(
            system_instruction=system,
            max_output_tokens=max_output_tokens,
            temperature=temperature,
        )
        if json_output:
            config.response_mime_type = "application/json"
        response = self._client.models.generate_content(
            model=model,
            contents=prompt,
            config=config,
        )
        finish = getattr(response.candidates[0], "finish_reason", None) if response.candidates else None
        if finish and str(finish) not in ("STOP", "FinishReason.STOP", "1"):
            logger.warning(f"Gemini non-STOP finish: {finish}; response may be truncated")
        return response

    async def generate(
        self,
        *,
        model: str,
        system: str,
        prompt: str,
        temperature: float,
        max_output_tokens: int,
        json_output: bool = False,
        cancel: Optional[CancellationToken] = None,
    ) -> LLMResult:
        loop = asyncio.get_running_loop()
        ctx = contextvars.copy_context()
        call = functools.partial(
            ctx.run, self._generate_sync, model, system, prompt,
            temperature, max_output_tokens, json_output,
        )
        future = loop.run_in_executor(None, call)
        response = await cancel.guard(future) if cancel is not None else await future

        text = response.text or ""
        meta = getattr(response, "usage_metadata", None)
        usage = TokenUsage(
            input=getattr(meta, "prompt_token_count", None) or 0,
            output=getattr(meta, "candidates_token_count", None) or 0,
        )
        data = parse_json_safe(text) if json_output else None
        logger.info(f"Gemini {model}: {len(text)} chars, {usage.input}+{usage.output} tokens")
        return LLMResult(
            text=text,
            data=data,
            usage=usage,
            cost=estimate_cost(model, usage, self._cfg),
            model=model,
        )
