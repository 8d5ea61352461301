from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime


@dataclass(frozen=True)
class ArticleImage:
    url: str
    width: int | None = None
    title: str | None = None
    caption: str | None = None
    license_url: str | None = None


@dataclass(frozen=True)
class ArticleTerm:
    taxonomy: str
    term_id: int
    name: str


@dataclass(frozen=True)
class Article:
    id: int
    url: str
    published_at: datetime
    modified_at: datetime
    title: str
    status: str = "publish"
    post_type: str = "post"
    terms: tuple[ArticleTerm, ...] = ()
    noindex: bool = False
    exclude: bool = False
    genres: tuple[str, ...] = ()
    stock_tickers: tuple[str, ...] = ()
    images: tuple[ArticleImage, ...] = ()
    seo_canonical_url: str | None = None


@dataclass(frozen=True)
class AlternateLink:
    rel: str
    href: str
    hreflang: str | None = None


@dataclass(frozen=True)
class SitemapConfig:
    enabled: bool
    publication_name: str
    post_types: tuple[str, ...]
    window_hours: int
    max_urls: int
    cache_ttl: int
    language: str
    default_genres: tuple[str, ...] = ()
    keywords_enabled: bool = False
    image_license_url: str | None = None
    excluded_terms: dict[str, frozenset[int]] = field(default_factory=dict)
    ping_enabled: bool = True
    respect_noindex: bool = True
    stylesheet_url: str | None = None


@dataclass(frozen=True)
class CacheEntry:
    key: str
    payload: str
    etag: str
    generated_at: str
    article_count: int
    took_ms: int
    expires_at: str | None = None


@dataclass(frozen=True)
class BuildMeta:
    status: str
    generated_at: str | None
    count: int
    took_ms: int
    etag: str | None = None
    error: str | None = None


@dataclass(frozen=True)
class PingRecord:
    pinged_at: str | None
    results: dict[str, dict[str, object]]


@dataclass
class RenderState:
    """Per-request bookkeeping for one sitemap render.

    Created by the HTTP handler and threaded through the coordinator so that
    nothing about a render leaks into process-wide state.
    """

    rendered: bool = False
    cache_status: str | None = None
    built: bool = False
    entry: CacheEntry | None = None


@dataclass(frozen=True)
class Job:
    id: str
    job_type: str
    status: str
    payload: dict[str, object]
    result: dict[str, object] | None
    run_after: str
    requested_at: str
    started_at: str | None
    finished_at: str | None
    locked_by: str | None
    locked_at: str | None
    error: str | None
