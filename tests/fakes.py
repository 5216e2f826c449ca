"""Scripted stand-ins for the Gemini client and the search providers."""

import asyncio
import inspect
import json
import re
from dataclasses import dataclass
from typing import Callable, Dict, Iterable, List, Optional

from config import Settings
from models.research import SearchHit, SearchResponse
from models.usage import TokenUsage
from services.llm import LLMResult, parse_json_safe
from utils.cancellation import CancellationToken

GAME = "Elden Ring"
SHARED_QUERY = "elden ring best starting class"


def make_settings(**overrides) -> Settings:
    values = dict(
        gemini_api_key="test-gemini",
        tavily_api_key="test-tavily",
        exa_api_key="",
        database_path="",
        batch_delay_sec=0,
        retry_initial_delay_sec=0.01,
        retry_max_delay_sec=0.05,
    )
    values.update(overrides)
    return Settings(_env_file=None, **values)


class RecordingSleep:
    """Replacement for asyncio.sleep that returns immediately and remembers the delays."""

    def __init__(self):
        self.delays: List[float] = []

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)


@dataclass
class LLMCall:
    model: str
    system: str
    prompt: str
    temperature: float
    max_output_tokens: int
    json_output: bool


class FakeLLM:
    """
    LLMClient driven by a respond(call) function. The reply may be text, a dict
    (JSON output), an LLMResult, an exception to raise, or an awaitable of any
    of those.
    """

    def __init__(self, respond: Optional[Callable[[LLMCall], object]] = None, usage=(100, 50), cost=0.001):
        self.calls: List[LLMCall] = []
        self._respond = respond or (lambda call: "")
        self.usage = TokenUsage(input=usage[0], output=usage[1])
        self.cost = cost

    def calls_for(self, marker: str) -> List[LLMCall]:
        return [c for c in self.calls if marker in c.system]

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
        call = LLMCall(model, system, prompt, temperature, max_output_tokens, json_output)
        self.calls.append(call)
        reply = self._respond(call)
        if inspect.isawaitable(reply):
            reply = await cancel.guard(reply) if cancel is not None else await reply
        if isinstance(reply, BaseException):
            raise reply
        if isinstance(reply, LLMResult):
            return reply
        if isinstance(reply, (dict, list)):
            return LLMResult(text=json.dumps(reply), data=reply, usage=self.usage, cost=self.cost, model=model)
        data = parse_json_safe(reply) if json_output else None
        return LLMResult(text=reply, data=data, usage=self.usage, cost=self.cost, model=model)


def slugify(text: str) -> str:
    return re.sub(r"[^a-z0-9]+", "-", text.lower()).strip("-")


class FakeProvider:
    """SearchProvider returning two deterministic hits per query."""

    def __init__(
        self,
        name: str = "tavily",
        fail: Iterable[str] = (),
        hits: Optional[Callable[[str], List[SearchHit]]] = None,
        cost: Optional[float] = None,
        delay: float = 0.0,
    ):
        self.name = name
        self.calls: List[str] = []
        self.fail = set(fail)
        self._hits = hits or default_hits
        self.cost = cost
        self.delay = delay

    def estimate_cost(self, depth: str) -> float:
        return 0.016 if depth == "advanced" else 0.008

    async def search(
        self,
        query: str,
        max_results: int = 5,
        depth: str = "basic",
        include_answer: bool = True,
        include_raw_content: bool = False,
    ) -> SearchResponse:
        self.calls.append(query)
        if self.delay:
            await asyncio.sleep(self.delay)
        if query in self.fail:
            raise RuntimeError(f"search backend unavailable for '{query}'")
        return SearchResponse(
            query=query,
            answer=f"Summary for {query}",
            results=self._hits(query)[:max_results],
            cost=self.cost,
        )


def default_hits(query: str) -> List[SearchHit]:
    slug = slugify(query)
    body = f"Detailed coverage of {query} with item names, locations and boss strategies. " * 4
    return [
        SearchHit(title=f"{query} - Wiki", url=f"https://gamewiki.example.com/{slug}", content=body),
        SearchHit(title=f"{query} - Guide", url=f"https://guides.example.net/{slug}#top", content=body),
    ]


# ═══════════════════════════════════════════════════════════
#  Whole-pipeline script
# ═══════════════════════════════════════════════════════════

EXCERPT = (
    "Everything a new player needs for the opening hours of Elden Ring: which class to pick, "
    "where to explore first and how to beat the early bosses."
)

HEADLINES = ["Choosing a Starting Class", "Exploring Limgrave", "Early Bosses", "Leveling and Upgrades"]


def make_plan_dict(
    headlines: Iterable[str] = HEADLINES,
    queries: Optional[Callable[[int, str], List[str]]] = None,
    category: str = "guides",
    title: str = "Elden Ring Beginner Guide: Surviving the Lands Between",
) -> Dict:
    queries = queries or (lambda i, h: [SHARED_QUERY])
    return {
        "title": title,
        "category_slug": category,
        "excerpt": EXCERPT,
        "tags": ["elden ring", "beginner guide"],
        "required_elements": ["Torrent"],
        "sections": [
            {
                "headline": h,
                "goal": f"Explain {h.lower()} for new players",
                "research_queries": queries(i, h),
                "must_cover": [],
            }
            for i, h in enumerate(headlines)
        ],
    }


def section_text(headline: str) -> str:
    return (
        f"{headline} shapes the first hours of any playthrough and the community wiki covers it in depth. "
        "Players who take time here tend to progress faster through the opening areas. "
        "Most veterans recommend experimenting before committing runes to a single path."
    )


_HEADLINE_RE = re.compile(r"^Headline: (.+)$", re.MULTILINE)
_EXISTING_RE = re.compile(r"EXISTING CONTENT:\n(.*?)\n\nWrite the expanded", re.DOTALL)

EXPANSION = "Spirit Ashes can also be summoned near Rebirth Monuments to split the boss's attention."


class PipelineLLM(FakeLLM):
    """Answers every agent of the pipeline by recognizing its system prompt."""

    def __init__(self, plan: Optional[Dict] = None, reviews: Iterable[Dict] = (), before=None, **kwargs):
        super().__init__(self._route, **kwargs)
        self.plan = plan or make_plan_dict()
        self.reviews = list(reviews)
        self.before = before

    def _route(self, call: LLMCall):
        if self.before is not None:
            override = self.before(call)
            if override is not None:
                return override
        system = call.system
        if "research scout" in system:
            return (
                f"{GAME} is an open-world action RPG from FromSoftware set in the Lands Between. "
                "Players explore freely, fight demanding bosses and build characters from ten starting classes."
            )
        if "editor-in-chief" in system:
            return self.plan
        if "specialist writer" in system:
            match = _HEADLINE_RE.search(call.prompt)
            return section_text(match.group(1).strip() if match else "This section")
        if "senior editor reviewing" in system:
            if self.reviews:
                return self.reviews.pop(0)
            return {"approved": True, "issues": [], "suggestions": []}
        if "expanding an article section" in system:
            match = _EXISTING_RE.search(call.prompt)
            existing = match.group(1) if match else ""
            return f"{existing}\n\n{EXPANSION}"
        return ""
