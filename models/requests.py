from pydantic import BaseModel, Field
from typing import List, Literal, Optional
from enum import Enum


class ArticleCategory(str, Enum):
    NEWS = "news"
    REVIEWS = "reviews"
    GUIDES = "guides"
    LISTS = "lists"


WriteMode = Literal["sequential", "parallel"]


class CategoryHint(BaseModel):
    slug: str
    system_prompt: Optional[str] = None


class ArticleContext(BaseModel):
    """
    Caller input for one article run. Deliberately unconstrained here:
    validate_article_context() reports every violation in one CONTEXT_INVALID error.
    """
    game_name: str = Field(..., description="Display name of the game the article is about")
    game_slug: Optional[str] = None
    release_date: Optional[str] = None
    genres: List[str] = []
    platforms: List[str] = []
    developer: Optional[str] = None
    publisher: Optional[str] = None
    description: Optional[str] = Field(None, description="Catalog description, used as background only")
    instruction: Optional[str] = Field(
        None,
        description="Free text directive for the article focus, e.g. 'beginner tips for the first 10 hours'",
    )
    category_hints: List[CategoryHint] = []
    target_word_count: Optional[int] = Field(None, description="Overall length target; drives paragraph pacing")
    write_mode: Optional[WriteMode] = Field(
        None,
        description="Override the per-category default of sequential vs parallel section writing",
    )
    enable_review: bool = True
