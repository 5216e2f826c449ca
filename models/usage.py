from pydantic import BaseModel
from typing import Dict


class TokenUsage(BaseModel):
    input: int = 0
    output: int = 0

    def __add__(self, other: "TokenUsage") -> "TokenUsage":
        return TokenUsage(input=self.input + other.input, output=self.output + other.output)

    @property
    def total(self) -> int:
        return self.input + self.output


class StageUsage(BaseModel):
    tokens: TokenUsage = TokenUsage()
    llm_cost_usd: float = 0.0
    search_cost_usd: float = 0.0

    def __add__(self, other: "StageUsage") -> "StageUsage":
        return StageUsage(
            tokens=self.tokens + other.tokens,
            llm_cost_usd=self.llm_cost_usd + other.llm_cost_usd,
            search_cost_usd=self.search_cost_usd + other.search_cost_usd,
        )


class AggregatedUsage(BaseModel):
    stages: Dict[str, StageUsage] = {}
    total: TokenUsage = TokenUsage()
    estimated_cost_usd: float = 0.0
