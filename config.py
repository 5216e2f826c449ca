from pydantic_settings import BaseSettings
from typing import Dict, List, Tuple
from errors import ArticleGenerationError, ErrorKind


class Settings(BaseSettings):
    gemini_api_key: str = ""
    tavily_api_key: str = ""
    exa_api_key: str = ""  # optional; enables semantic routing
    database_path: str = "article_cache.db"
    cors_origins: List[str] = [
        "http://localhost:3000",
        "http://localhost:5173",
    ]

    # Gemini models per agent
    scout_model: str = "gemini-2.5-flash"
    editor_model: str = "gemini-2.5-flash"
    specialist_model: str = "gemini-2.5-flash"
    reviewer_model: str = "gemini-2.5-flash"
    cleaner_model: str = "gemini-2.5-flash-lite"

    # Retry / backoff
    retry_max_attempts: int = 3
    retry_initial_delay_sec: float = 1.0
    retry_max_delay_sec: float = 10.0
    retry_backoff_multiplier: float = 2.0

    # Scout
    scout_overview_results: int = 8
    scout_category_results: int = 6
    scout_recent_results: int = 5
    scout_max_category_searches: int = 2
    scout_temperature: float = 0.2
    scout_max_snippet_length: int = 800
    scout_results_per_context: int = 5
    scout_min_sources_warning: int = 5
    scout_min_queries_warning: int = 3
    scout_min_overview_length: int = 50
    scout_max_output_tokens: int = 2048

    # Editor
    editor_temperature: float = 0.4
    editor_max_plan_attempts: int = 3
    editor_max_output_tokens: int = 4096

    # Article plan constraints
    title_min_length: int = 10
    title_max_length: int = 100
    excerpt_min_length: int = 120
    excerpt_max_length: int = 160
    min_sections: int = 3
    max_sections: int = 12
    min_tags: int = 1
    max_tags: int = 10
    max_tag_length: int = 50
    min_queries_per_section: int = 1
    max_queries_per_section: int = 6
    min_markdown_length: int = 500

    # Specialist
    snippet_length: int = 280
    top_results_per_query: int = 3
    context_tail_length: int = 500
    min_paragraphs: int = 2
    max_paragraphs: int = 5
    words_per_paragraph: int = 80
    paragraph_lower_offset: int = 1
    paragraph_upper_offset: int = 1
    max_scout_overview_length: int = 2500
    research_context_per_result: int = 600
    thin_research_threshold: int = 500
    results_per_research_context: int = 5
    specialist_temperature: float = 0.6
    max_output_tokens_per_section: int = 1500
    search_depth: str = "advanced"
    max_search_results: int = 5
    max_sources: int = 25
    batch_concurrency: int = 3
    batch_delay_sec: float = 0.2
    sequential_categories: List[str] = ["guides", "reviews"]
    cross_reference_categories: List[str] = ["guides"]
    semantic_routing_categories: List[str] = ["guides"]

    # Reviewer
    reviewer_temperature: float = 0.3
    reviewer_max_article_chars: int = 20000
    reviewer_max_research_chars: int = 4000
    reviewer_max_output_tokens: int = 2048

    # Fixer
    fixer_temperature: float = 0.5
    max_fixer_iterations: int = 2
    max_critical_fix_iterations: int = 4
    max_direct_edits_per_iteration: int = 3
    fixer_max_output_tokens: int = 2048

    # Cleaner
    cleaner_temperature: float = 0.1
    cleaner_max_output_tokens: int = 8192
    min_content_length: int = 100  # scrape floor
    max_cleaner_input_chars: int = 12000
    cleaner_batch_size: int = 3
    min_relevance_for_results: int = 70
    min_quality_for_results: int = 35
    min_relevance_for_storage: int = 20
    min_quality_for_storage: int = 15

    # Domain auto-exclusion
    auto_exclude_quality_threshold: float = 25
    quality_min_samples: int = 5
    auto_exclude_relevance_threshold: float = 30
    relevance_min_samples: int = 3
    scrape_failure_min_attempts: int = 5
    scrape_failure_rate_threshold: float = 0.7
    tier_excellent: float = 80
    tier_good: float = 60
    tier_average: float = 40
    tier_poor: float = 25

    # Search cost estimates (USD per call)
    tavily_basic_cost: float = 0.008
    tavily_advanced_cost: float = 0.016
    exa_search_cost: float = 0.005
    search_timeout_sec: float = 20.0

    # Pipeline
    pipeline_timeout_sec: float = 0  # 0 disables the deadline
    specialist_progress_start: int = 10
    specialist_progress_end: int = 90

    # USD per 1k tokens (input, output); matched by longest prefix
    model_pricing: Dict[str, Tuple[float, float]] = {
        "gemini-2.5-flash-lite": (0.0001, 0.0004),
        "gemini-2.5-flash": (0.0003, 0.0025),
        "gemini-2.5-pro": (0.00125, 0.01),
        "gemini-3-flash": (0.0005, 0.003),
    }
    default_model_pricing: Tuple[float, float] = (0.002, 0.008)

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8", "frozen": True}


def _check_min_max(errors: List[str], lo, hi, lo_name: str, hi_name: str) -> None:
    if lo > hi:
        errors.append(f"{lo_name} ({lo}) must be <= {hi_name} ({hi})")


def _check_positive(errors: List[str], value, name: str) -> None:
    if value <= 0:
        errors.append(f"{name} must be positive (got {value})")


def validate_settings(cfg: Settings) -> List[str]:
    """
    Check the settings for internal consistency.
    Returns every violation found; an empty list means the settings are usable.
    """
    errors: List[str] = []

    _check_min_max(errors, cfg.title_min_length, cfg.title_max_length, "title_min_length", "title_max_length")
    _check_min_max(errors, cfg.excerpt_min_length, cfg.excerpt_max_length, "excerpt_min_length", "excerpt_max_length")
    _check_min_max(errors, cfg.min_sections, cfg.max_sections, "min_sections", "max_sections")
    _check_min_max(errors, cfg.min_tags, cfg.max_tags, "min_tags", "max_tags")
    _check_min_max(
        errors, cfg.min_queries_per_section, cfg.max_queries_per_section,
        "min_queries_per_section", "max_queries_per_section",
    )
    _check_min_max(errors, cfg.min_paragraphs, cfg.max_paragraphs, "min_paragraphs", "max_paragraphs")
    _check_min_max(
        errors, cfg.retry_initial_delay_sec, cfg.retry_max_delay_sec,
        "retry_initial_delay_sec", "retry_max_delay_sec",
    )
    _check_min_max(
        errors, cfg.specialist_progress_start, cfg.specialist_progress_end,
        "specialist_progress_start", "specialist_progress_end",
    )
    _check_min_max(
        errors, cfg.max_fixer_iterations, cfg.max_critical_fix_iterations,
        "max_fixer_iterations", "max_critical_fix_iterations",
    )

    # Storage thresholds gate what is kept at all, display thresholds what the
    # writers see; anything shown must also be storable.
    _check_min_max(
        errors, cfg.min_relevance_for_storage, cfg.min_relevance_for_results,
        "min_relevance_for_storage", "min_relevance_for_results",
    )
    _check_min_max(
        errors, cfg.min_quality_for_storage, cfg.min_quality_for_results,
        "min_quality_for_storage", "min_quality_for_results",
    )
    # Rows below the storage thresholds never reach the aggregates, so an
    # exclusion threshold at or under them could never fire.
    if cfg.auto_exclude_quality_threshold <= cfg.min_quality_for_storage:
        errors.append("auto_exclude_quality_threshold must be > min_quality_for_storage")
    if cfg.auto_exclude_relevance_threshold <= cfg.min_relevance_for_storage:
        errors.append("auto_exclude_relevance_threshold must be > min_relevance_for_storage")

    for name in (
        "retry_max_attempts", "retry_initial_delay_sec", "retry_backoff_multiplier",
        "batch_concurrency", "max_sources", "words_per_paragraph", "cleaner_batch_size",
        "quality_min_samples", "relevance_min_samples", "scrape_failure_min_attempts",
        "editor_max_plan_attempts", "max_cleaner_input_chars",
    ):
        _check_positive(errors, getattr(cfg, name), name)

    if cfg.batch_delay_sec < 0:
        errors.append(f"batch_delay_sec must be non-negative (got {cfg.batch_delay_sec})")
    if cfg.pipeline_timeout_sec < 0:
        errors.append(f"pipeline_timeout_sec must be non-negative (got {cfg.pipeline_timeout_sec})")
    if not 0 <= cfg.scrape_failure_rate_threshold <= 1:
        errors.append("scrape_failure_rate_threshold must be within 0-1")

    for name in (
        "scout_temperature", "editor_temperature", "specialist_temperature",
        "reviewer_temperature", "fixer_temperature", "cleaner_temperature",
    ):
        value = getattr(cfg, name)
        if not 0 <= value <= 2:
            errors.append(f"{name} must be within 0-2 (got {value})")

    tiers = [cfg.tier_excellent, cfg.tier_good, cfg.tier_average, cfg.tier_poor]
    if any(a <= b for a, b in zip(tiers, tiers[1:])):
        errors.append(f"tier thresholds must be strictly decreasing (got {tiers})")

    return errors


def ensure_valid_settings(cfg: Settings) -> Settings:
    """Raise CONFIG_ERROR listing every violation; return cfg unchanged otherwise."""
    errors = validate_settings(cfg)
    if errors:
        raise ArticleGenerationError(
            ErrorKind.CONFIG_ERROR,
            "Invalid configuration: " + "; ".join(errors),
        )
    return cfg


settings = Settings()
