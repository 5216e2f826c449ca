import sqlite3
import os
import json
from contextlib import contextmanager
from typing import Dict, Iterable, List, Optional
from models.sources import DomainQuality, StoredSourceContent

DB_PATH = os.path.join(os.path.dirname(__file__), "article_cache.db")


def init_db(path: str = DB_PATH):
    conn = sqlite3.connect(path)
    conn.execute("""
        CREATE TABLE IF NOT EXISTS source_contents (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            url TEXT UNIQUE NOT NULL,
            domain TEXT NOT NULL,
            title TEXT NOT NULL DEFAULT '',
            summary TEXT,
            cleaned_content TEXT NOT NULL DEFAULT '',
            original_content_length INTEGER NOT NULL DEFAULT 0,
            quality_score INTEGER,
            relevance_score INTEGER,
            quality_notes TEXT,
            content_type TEXT NOT NULL DEFAULT 'other',
            junk_ratio REAL NOT NULL DEFAULT 0,
            access_count INTEGER NOT NULL DEFAULT 0,
            last_accessed_at TEXT,
            search_source TEXT NOT NULL DEFAULT 'tavily',
            scrape_succeeded INTEGER NOT NULL DEFAULT 1,
            created_at TEXT DEFAULT (datetime('now'))
        )
    """)
    conn.execute("CREATE INDEX IF NOT EXISTS idx_source_contents_domain ON source_contents(domain)")
    conn.execute("""
        CREATE TABLE IF NOT EXISTS domain_qualities (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            domain TEXT UNIQUE NOT NULL,
            avg_quality_score REAL NOT NULL DEFAULT 0,
            avg_relevance_score REAL,
            total_sources INTEGER NOT NULL DEFAULT 0,
            tier TEXT NOT NULL DEFAULT 'average',
            is_excluded INTEGER NOT NULL DEFAULT 0,
            exclude_reason TEXT,
            domain_type TEXT NOT NULL DEFAULT 'other',
            provider_stats TEXT NOT NULL DEFAULT '{}',
            updated_at TEXT DEFAULT (datetime('now'))
        )
    """)
    conn.commit()
    conn.close()


@contextmanager
def get_db(path: str = DB_PATH):
    conn = sqlite3.connect(path)
    conn.row_factory = sqlite3.Row
    try:
        yield conn
    finally:
        conn.close()


_SOURCE_COLUMNS = (
    "url", "domain", "title", "summary", "cleaned_content", "original_content_length",
    "quality_score", "relevance_score", "quality_notes", "content_type", "junk_ratio",
    "access_count", "last_accessed_at", "search_source", "scrape_succeeded",
)


def _row_to_source(row: sqlite3.Row) -> StoredSourceContent:
    data = dict(row)
    data.pop("created_at", None)
    data["scrape_succeeded"] = bool(data["scrape_succeeded"])
    return StoredSourceContent(**data)


def _row_to_domain(row: sqlite3.Row) -> DomainQuality:
    data = dict(row)
    stats = json.loads(data.pop("provider_stats") or "{}")
    data.pop("id", None)
    data.pop("updated_at", None)
    data["is_excluded"] = bool(data["is_excluded"])
    return DomainQuality(
        **data,
        provider_attempts=stats.get("attempts", {}),
        provider_failures=stats.get("failures", {}),
        provider_excluded=stats.get("excluded", {}),
        provider_exclude_reasons=stats.get("reasons", {}),
    )


class SourceStore:
    """
    Synchronous repository over the two cache tables. Callers on the event
    loop go through SourceCache, which runs these methods on the executor.
    """

    def __init__(self, path: str = DB_PATH):
        self.path = path
        init_db(path)

    def find_by_urls(self, urls: Iterable[str]) -> Dict[str, StoredSourceContent]:
        urls = list(dict.fromkeys(urls))
        if not urls:
            return {}
        found: Dict[str, StoredSourceContent] = {}
        with get_db(self.path) as conn:
            # sqlite caps bound parameters; chunk the IN list
            for i in range(0, len(urls), 500):
                chunk = urls[i:i + 500]
                placeholders = ",".join("?" for _ in chunk)
                rows = conn.execute(
                    f"SELECT * FROM source_contents WHERE url IN ({placeholders})", chunk
                ).fetchall()
                for row in rows:
                    found[row["url"]] = _row_to_source(row)
        return found

    def insert_source(self, source: StoredSourceContent) -> bool:
        """Insert unless the URL already exists. Returns True when a row was written."""
        values = [getattr(source, c) for c in _SOURCE_COLUMNS]
        values[_SOURCE_COLUMNS.index("scrape_succeeded")] = 1 if source.scrape_succeeded else 0
        with get_db(self.path) as conn:
            cur = conn.execute(
                f"INSERT OR IGNORE INTO source_contents ({', '.join(_SOURCE_COLUMNS)}) "
                f"VALUES ({', '.join('?' for _ in _SOURCE_COLUMNS)})",
                values,
            )
            conn.commit()
            return cur.rowcount > 0

    def update_source(self, url: str, fields: Dict[str, object]) -> bool:
        if not fields:
            return False
        unknown = set(fields) - set(_SOURCE_COLUMNS)
        if unknown:
            raise ValueError(f"Unknown source_contents column(s): {sorted(unknown)}")
        values = [int(v) if isinstance(v, bool) else v for v in fields.values()]
        assignments = ", ".join(f"{k} = ?" for k in fields)
        with get_db(self.path) as conn:
            cur = conn.execute(
                f"UPDATE source_contents SET {assignments} WHERE url = ?", [*values, url]
            )
            conn.commit()
            return cur.rowcount > 0

    def touch_sources(self, urls: Iterable[str], accessed_at: str) -> None:
        urls = list(urls)
        if not urls:
            return
        with get_db(self.path) as conn:
            conn.executemany(
                "UPDATE source_contents SET access_count = access_count + 1, last_accessed_at = ? WHERE url = ?",
                [(accessed_at, u) for u in urls],
            )
            conn.commit()

    def aggregate_domain(self, domain: str) -> Dict[str, Optional[float]]:
        """AVG/COUNT over every stored row for the domain."""
        with get_db(self.path) as conn:
            row = conn.execute(
                """
                SELECT AVG(quality_score) AS avg_quality,
                       COUNT(quality_score) AS quality_samples,
                       AVG(relevance_score) AS avg_relevance,
                       COUNT(relevance_score) AS relevance_samples,
                       COUNT(*) AS total_rows
                FROM source_contents WHERE domain = ?
                """,
                (domain,),
            ).fetchone()
        return dict(row)

    def provider_scrape_stats(self, domain: str) -> Dict[str, Dict[str, int]]:
        with get_db(self.path) as conn:
            rows = conn.execute(
                """
                SELECT search_source,
                       COUNT(*) AS attempts,
                       SUM(CASE WHEN scrape_succeeded = 0 THEN 1 ELSE 0 END) AS failures
                FROM source_contents WHERE domain = ?
                GROUP BY search_source
                """,
                (domain,),
            ).fetchall()
        return {r["search_source"]: {"attempts": r["attempts"], "failures": r["failures"] or 0} for r in rows}

    def upsert_domain_quality(self, dq: DomainQuality) -> None:
        stats = json.dumps({
            "attempts": dq.provider_attempts,
            "failures": dq.provider_failures,
            "excluded": dq.provider_excluded,
            "reasons": dq.provider_exclude_reasons,
        })
        with get_db(self.path) as conn:
            conn.execute(
                """
                INSERT INTO domain_qualities
                    (domain, avg_quality_score, avg_relevance_score, total_sources, tier,
                     is_excluded, exclude_reason, domain_type, provider_stats, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, datetime('now'))
                ON CONFLICT(domain) DO UPDATE SET
                    avg_quality_score = excluded.avg_quality_score,
                    avg_relevance_score = excluded.avg_relevance_score,
                    total_sources = excluded.total_sources,
                    tier = excluded.tier,
                    is_excluded = excluded.is_excluded,
                    exclude_reason = excluded.exclude_reason,
                    domain_type = excluded.domain_type,
                    provider_stats = excluded.provider_stats,
                    updated_at = excluded.updated_at
                """,
                (
                    dq.domain, dq.avg_quality_score, dq.avg_relevance_score, dq.total_sources,
                    dq.tier, 1 if dq.is_excluded else 0, dq.exclude_reason, dq.domain_type, stats,
                ),
            )
            conn.commit()

    def get_domain_quality(self, domain: str) -> Optional[DomainQuality]:
        with get_db(self.path) as conn:
            row = conn.execute("SELECT * FROM domain_qualities WHERE domain = ?", (domain,)).fetchone()
        return _row_to_domain(row) if row else None

    def find_domain_qualities(self, domains: Iterable[str]) -> Dict[str, DomainQuality]:
        domains = list(dict.fromkeys(domains))
        if not domains:
            return {}
        found: Dict[str, DomainQuality] = {}
        with get_db(self.path) as conn:
            for i in range(0, len(domains), 500):
                chunk = domains[i:i + 500]
                placeholders = ",".join("?" for _ in chunk)
                rows = conn.execute(
                    f"SELECT * FROM domain_qualities WHERE domain IN ({placeholders})", chunk
                ).fetchall()
                for row in rows:
                    found[row["domain"]] = _row_to_domain(row)
        return found

    def list_domain_qualities(self) -> List[DomainQuality]:
        with get_db(self.path) as conn:
            rows = conn.execute("SELECT * FROM domain_qualities").fetchall()
        return [_row_to_domain(r) for r in rows]
