from __future__ import annotations

import logging
import threading
from contextlib import closing, contextmanager
from datetime import date, datetime
from typing import Any, Iterable, Iterator

import jsonschema
import yaml
from bs4 import BeautifulSoup

from .db import connect_db
from .models import Article, ArticleImage, ArticleTerm
from .storage import (
    get_article_row,
    latest_modified_at,
    query_recent_article_ids,
    upsert_article,
)
from .utils import isoformat_utc, log_event, parse_datetime, url_host

ARTICLE_SCHEMA: dict[str, Any] = {
    "type": "object",
    "required": ["id", "url", "title", "published_at"],
    "properties": {
        "id": {"type": "integer", "minimum": 1},
        "url": {"type": "string", "minLength": 1},
        "title": {"type": "string"},
        "status": {"type": "string"},
        "post_type": {"type": "string"},
        "published_at": {"type": ["string", "integer"]},
        "modified_at": {"type": ["string", "integer", "null"]},
        "genres": {"type": "array", "items": {"type": "string"}},
        "stock_tickers": {"type": "array", "items": {"type": "string"}},
        "seo_canonical_url": {"type": ["string", "null"]},
        "terms": {
            "type": "array",
            "items": {
                "type": "object",
                "required": ["taxonomy", "term_id", "name"],
                "properties": {
                    "taxonomy": {"type": "string"},
                    "term_id": {"type": "integer"},
                    "name": {"type": "string"},
                },
            },
        },
        "images": {
            "type": "array",
            "items": {
                "type": "object",
                "required": ["url"],
                "properties": {
                    "url": {"type": "string"},
                    "width": {"type": ["integer", "null"]},
                    "title": {"type": ["string", "null"]},
                    "caption": {"type": ["string", "null"]},
                    "license_url": {"type": ["string", "null"]},
                },
            },
        },
        "meta": {"type": "object"},
    },
}

MAX_STOCK_TICKERS = 5


class ContentSourceError(RuntimeError):
    pass


class ArticleImportError(ValueError):
    pass


class ContentSource:
    def query_recent(
        self,
        post_types: Iterable[str],
        after: datetime,
        max_count: int,
        excluded_terms: dict[str, frozenset[int]] | None = None,
    ) -> list[int]:
        raise NotImplementedError

    def fetch(self, article_id: int) -> Article | None:
        raise NotImplementedError

    def get_site_host(self) -> str:
        raise NotImplementedError

    def latest_modified_at(self, post_types: Iterable[str]) -> datetime | None:
        return None

    @contextmanager
    def session(self) -> Iterator[None]:
        """Scope for one build; sources may hold resources open across it."""
        yield


class StaticContentSource(ContentSource):
    def __init__(self, articles: Iterable[Article], site_url: str) -> None:
        self._articles = {article.id: article for article in articles}
        self._site_url = site_url

    def query_recent(self, post_types, after, max_count, excluded_terms=None) -> list[int]:
        wanted = set(post_types)
        excluded = excluded_terms or {}
        matches = []
        for article in self._articles.values():
            if article.status != "publish" or article.post_type not in wanted:
                continue
            if article.published_at < after:
                continue
            if any(term.term_id in excluded.get(term.taxonomy, ()) for term in article.terms):
                continue
            matches.append(article)
        matches.sort(key=lambda item: (item.published_at, item.id), reverse=True)
        return [article.id for article in matches[: max(1, max_count)]]

    def fetch(self, article_id: int) -> Article | None:
        return self._articles.get(article_id)

    def get_site_host(self) -> str:
        return url_host(self._site_url)

    def latest_modified_at(self, post_types) -> datetime | None:
        wanted = set(post_types)
        stamps = [
            article.modified_at
            for article in self._articles.values()
            if article.status == "publish" and article.post_type in wanted
        ]
        return max(stamps) if stamps else None


class SqliteContentSource(ContentSource):
    def __init__(self, db_path: str, site_url: str, logger: logging.Logger | None = None) -> None:
        self.db_path = db_path
        self._site_url = site_url
        self.logger = logger
        self._local = threading.local()

    def query_recent(self, post_types, after, max_count, excluded_terms=None) -> list[int]:
        excluded = {
            taxonomy: sorted(term_ids) for taxonomy, term_ids in (excluded_terms or {}).items()
        }
        try:
            with self._connect() as conn:
                return query_recent_article_ids(
                    conn, list(post_types), isoformat_utc(after), max_count, excluded
                )
        except Exception as exc:  # noqa: BLE001
            raise ContentSourceError(f"article query failed: {exc}") from exc

    def fetch(self, article_id: int) -> Article | None:
        try:
            with self._connect() as conn:
                record = get_article_row(conn, article_id)
        except Exception as exc:  # noqa: BLE001
            raise ContentSourceError(f"article fetch failed: {exc}") from exc
        if record is None:
            return None
        try:
            return article_from_record(record)
        except (KeyError, TypeError, ValueError) as exc:
            log_event(
                self.logger,
                logging.WARNING,
                "article_malformed",
                article_id=article_id,
                error=str(exc),
            )
            return None

    def get_site_host(self) -> str:
        return url_host(self._site_url)

    def latest_modified_at(self, post_types) -> datetime | None:
        with self._connect() as conn:
            return parse_datetime(latest_modified_at(conn, list(post_types)))

    @contextmanager
    def session(self) -> Iterator[None]:
        if getattr(self._local, "active", False):
            yield
            return
        self._local.active = True
        try:
            yield
        finally:
            self._local.active = False
            conn = getattr(self._local, "conn", None)
            self._local.conn = None
            if conn is not None:
                conn.close()

    @contextmanager
    def _connect(self) -> Iterator[Any]:
        # One connection per thread while a session is open, else one per call.
        if not getattr(self._local, "active", False):
            with closing(connect_db(self.db_path)) as conn:
                yield conn
            return
        if getattr(self._local, "conn", None) is None:
            self._local.conn = connect_db(self.db_path)
        yield self._local.conn


def is_noindex(meta: dict[str, Any] | None) -> bool:
    if not meta:
        return False
    if str(meta.get("_yoast_wpseo_meta-robots-noindex", "")) == "1":
        return True
    rank_math = meta.get("rank_math_robots")
    if isinstance(rank_math, list) and "noindex" in rank_math:
        return True
    aioseo = meta.get("_aioseo_robots_default")
    if isinstance(aioseo, dict) and aioseo.get("noindex"):
        return True
    return False


def is_excluded(meta: dict[str, Any] | None) -> bool:
    return bool((meta or {}).get("_exclude_from_news_sitemap"))


def plain_title(title: str) -> str:
    if "<" not in title and "&" not in title:
        return " ".join(title.split())
    text = BeautifulSoup(title, "html.parser").get_text()
    return " ".join(text.split())


def article_from_record(record: dict[str, Any]) -> Article:
    published_at = parse_datetime(record.get("published_at"))
    if published_at is None:
        raise ValueError("published_at is required")
    modified_at = parse_datetime(record.get("modified_at")) or published_at
    meta = record.get("meta") or {}
    images = tuple(
        ArticleImage(
            url=str(image["url"]),
            width=int(image["width"]) if image.get("width") is not None else None,
            title=image.get("title"),
            caption=image.get("caption"),
            license_url=image.get("license_url"),
        )
        for image in record.get("images") or []
        if image.get("url")
    )
    terms = tuple(
        ArticleTerm(taxonomy=str(term["taxonomy"]), term_id=int(term["term_id"]), name=str(term["name"]))
        for term in record.get("terms") or []
    )
    tickers = tuple(
        ticker.strip() for ticker in record.get("stock_tickers") or [] if ticker and ticker.strip()
    )
    return Article(
        id=int(record["id"]),
        url=str(record["url"]),
        published_at=published_at,
        modified_at=modified_at,
        title=plain_title(str(record.get("title") or "")),
        status=str(record.get("status") or "publish"),
        post_type=str(record.get("post_type") or "post"),
        terms=terms,
        noindex=is_noindex(meta),
        exclude=is_excluded(meta),
        genres=tuple(record.get("genres") or ()),
        stock_tickers=tickers[:MAX_STOCK_TICKERS],
        images=images,
        seo_canonical_url=record.get("seo_canonical_url") or None,
    )


def load_articles_file(path: str) -> list[dict[str, Any]]:
    try:
        with open(path, "r", encoding="utf-8") as handle:
            data = yaml.safe_load(handle) or []
    except OSError as exc:
        raise ArticleImportError(f"Unable to read {path}: {exc}") from exc
    except yaml.YAMLError as exc:
        raise ArticleImportError(f"Invalid YAML in {path}: {exc}") from exc
    if isinstance(data, dict):
        data = data.get("articles") or []
    if not isinstance(data, list):
        raise ArticleImportError(f"{path} must contain a list of articles")
    return data


def validate_article_document(document: Any) -> dict[str, Any]:
    if isinstance(document, dict):
        document = {
            key: value.isoformat() if isinstance(value, (date, datetime)) else value
            for key, value in document.items()
        }
    try:
        jsonschema.validate(document, ARTICLE_SCHEMA)
    except jsonschema.ValidationError as exc:
        raise ArticleImportError(f"invalid article: {exc.message}") from exc
    for key in ("published_at", "modified_at"):
        value = document.get(key)
        if value is not None and parse_datetime(value) is None:
            raise ArticleImportError(f"invalid article: {key} is not a timestamp")
    return document


def import_articles(conn, documents: Iterable[Any]) -> list[int]:
    imported: list[int] = []
    for document in documents:
        record = dict(validate_article_document(document))
        record["published_at"] = isoformat_utc(parse_datetime(record["published_at"]))
        if record.get("modified_at") is not None:
            record["modified_at"] = isoformat_utc(parse_datetime(record["modified_at"]))
        upsert_article(conn, record)
        imported.append(int(record["id"]))
    return imported


def articles_from_documents(documents: Iterable[Any]) -> list[Article]:
    return [article_from_record(validate_article_document(document)) for document in documents]
