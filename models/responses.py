from pydantic import BaseModel
from typing import Optional
from errors import ArticleGenerationError


class ErrorResponse(BaseModel):
    error: str
    kind: str
    detail: Optional[str] = None

    @classmethod
    def from_error(cls, e: ArticleGenerationError) -> "ErrorResponse":
        return cls(error="Article generation failed", kind=e.kind.value, detail=e.message)


class ProgressEvent(BaseModel):
    type: str = "progress"
    stage: str
    percent: int
    detail: Optional[str] = None


class HealthResponse(BaseModel):
    status: str = "ok"
    semantic_routing: bool = False
    cache_enabled: bool = False
