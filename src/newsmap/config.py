from __future__ import annotations

import json
import os
from dataclasses import dataclass
from typing import Any

import yaml

from .models import SitemapConfig
from .storage import get_setting, set_setting
from .utils import is_http_url

WINDOW_HOURS = 48
MAX_URLS = 1000
CACHE_TTL_SECONDS = 600
RESPECT_NOINDEX = True
DEFAULT_POST_TYPES = ["post"]

ALLOWED_GENRES = ("PressRelease", "Satire", "Blog", "OpEd", "Opinion", "UserGenerated")

SITEMAP_FORM_KEYS = (
    "enabled",
    "publication_name",
    "post_types",
    "default_genres",
    "keywords_enabled",
    "image_license_url",
    "excluded_terms",
    "ping_enabled",
    "stylesheet_url",
)


class ConfigError(ValueError):
    pass


@dataclass(frozen=True)
class SiteConfig:
    name: str
    url: str
    locale: str
    post_types: list[str]


@dataclass(frozen=True)
class SitemapSettings:
    enabled: bool
    publication_name: str
    post_types: list[str]
    default_genres: list[str]
    keywords_enabled: bool
    image_license_url: str
    excluded_terms: dict[str, list[int]]
    ping_enabled: bool
    stylesheet_url: str


@dataclass(frozen=True)
class PingConfig:
    timeout_seconds: int
    user_agent: str


@dataclass(frozen=True)
class BuildConfig:
    timeout_seconds: int
    lock_ttl_seconds: int


@dataclass(frozen=True)
class JobsConfig:
    lock_timeout_seconds: int
    prewarm_delay_seconds: int
    initial_delay_seconds: int


@dataclass(frozen=True)
class Config:
    site: SiteConfig
    sitemap: SitemapSettings
    ping: PingConfig
    build: BuildConfig
    jobs: JobsConfig


DEFAULT_CONFIG: dict[str, Any] = {
    "site": {
        "name": "Newsroom",
        "url": "http://localhost:8000",
        "locale": "en_US",
        "post_types": ["post", "page"],
    },
    "sitemap": {
        "enabled": True,
        "publication_name": "",
        "post_types": ["post"],
        "default_genres": [],
        "keywords_enabled": False,
        "image_license_url": "",
        "excluded_terms": {},
        "ping_enabled": True,
        "stylesheet_url": "",
    },
    "ping": {
        "timeout_seconds": 10,
        "user_agent": "newsmap/0.1",
    },
    "build": {
        "timeout_seconds": 10,
        "lock_ttl_seconds": 120,
    },
    "jobs": {
        "lock_timeout_seconds": 600,
        "prewarm_delay_seconds": 15,
        "initial_delay_seconds": 60,
    },
}

CONFIG_KEY = "config.runtime"


def get_state_db_path() -> str:
    data_dir = os.environ.get("NM_DATA_DIR", "/data")
    return os.path.join(data_dir, "state.sqlite3")


def bootstrap_runtime_config(conn) -> dict[str, Any]:
    cfg = get_setting(conn, CONFIG_KEY, None)
    if cfg is None:
        set_setting(conn, CONFIG_KEY, _deep_copy(DEFAULT_CONFIG))
        cfg = get_setting(conn, CONFIG_KEY, None)
    if not isinstance(cfg, dict):
        raise ConfigError("config.runtime must be a JSON object")
    return cfg


def get_runtime_config(conn) -> dict[str, Any]:
    cfg = bootstrap_runtime_config(conn)
    errors = validate_runtime_config(cfg)
    if errors:
        raise ConfigError("Invalid config.runtime: " + "; ".join(errors))
    return cfg


def set_runtime_config(conn, cfg: dict[str, Any]) -> None:
    errors = validate_runtime_config(cfg)
    if errors:
        raise ConfigError("Invalid config.runtime: " + "; ".join(errors))
    set_setting(conn, CONFIG_KEY, _deep_copy(cfg))


def load_runtime_config(conn) -> Config:
    cfg = get_runtime_config(conn)
    return _build_config(cfg)


def load_config_file(path: str) -> dict[str, Any]:
    try:
        with open(path, "r", encoding="utf-8") as handle:
            data = yaml.safe_load(handle) or {}
    except OSError as exc:
        raise ConfigError(f"Unable to read config file {path}: {exc}") from exc
    except yaml.YAMLError as exc:
        raise ConfigError(f"Invalid YAML in {path}: {exc}") from exc
    if not isinstance(data, dict):
        raise ConfigError(f"{path} must contain a mapping")
    merged = _merge_defaults(DEFAULT_CONFIG, data)
    errors = validate_runtime_config(merged)
    if errors:
        raise ConfigError("Invalid config file: " + "; ".join(errors))
    return merged


def validate_runtime_config(cfg: dict[str, Any]) -> list[str]:
    errors: list[str] = []
    _validate_dict(cfg, DEFAULT_CONFIG, "config.runtime", errors)
    return errors


def _validate_dict(value: dict[str, Any], schema: dict[str, Any], path: str, errors: list[str]) -> None:
    if not isinstance(value, dict):
        errors.append(f"{path} must be an object")
        return
    for key in schema.keys():
        if key not in value:
            errors.append(f"missing {path}.{key}")
    for key in value.keys():
        if key not in schema:
            errors.append(f"unknown {path}.{key}")
    for key, default in schema.items():
        if key not in value:
            continue
        _validate_value(value[key], default, f"{path}.{key}", errors)


def _validate_value(value: Any, default: Any, path: str, errors: list[str]) -> None:
    if isinstance(default, dict):
        if not isinstance(value, dict):
            errors.append(f"{path} must be an object")
            return
        if not default:
            _validate_term_map(value, path, errors)
            return
        _validate_dict(value, default, path, errors)
        return
    if isinstance(default, list):
        if not isinstance(value, list):
            errors.append(f"{path} must be a list")
            return
        for item in value:
            if not isinstance(item, str):
                errors.append(f"{path} must be a list of strings")
                break
        return
    if isinstance(default, bool):
        if not isinstance(value, bool):
            errors.append(f"{path} must be a boolean")
        return
    if isinstance(default, int):
        if not isinstance(value, int) or isinstance(value, bool):
            errors.append(f"{path} must be an integer")
        return
    if isinstance(default, str):
        if not isinstance(value, str):
            errors.append(f"{path} must be a string")
        return


def _validate_term_map(value: dict[str, Any], path: str, errors: list[str]) -> None:
    for taxonomy, term_ids in value.items():
        if not isinstance(term_ids, list) or not all(
            isinstance(item, int) and not isinstance(item, bool) for item in term_ids
        ):
            errors.append(f"{path}.{taxonomy} must be a list of integers")


def sanitize_sitemap_settings(
    form: dict[str, Any],
    available_post_types: list[str],
) -> dict[str, Any]:
    clean = _deep_copy(DEFAULT_CONFIG["sitemap"])

    clean["enabled"] = _as_bool(form.get("enabled"))
    clean["publication_name"] = " ".join(str(form.get("publication_name") or "").split())

    post_types: list[str] = []
    for value in _as_list(form.get("post_types")):
        key = str(value).strip().lower()
        if key in available_post_types and key != "attachment" and key not in post_types:
            post_types.append(key)
    clean["post_types"] = post_types or list(DEFAULT_POST_TYPES)

    clean["default_genres"] = sanitize_genres(_as_list(form.get("default_genres")))
    clean["keywords_enabled"] = _as_bool(form.get("keywords_enabled"))
    clean["ping_enabled"] = _as_bool(form.get("ping_enabled", True))

    for key in ("image_license_url", "stylesheet_url"):
        candidate = str(form.get(key) or "").strip()
        clean[key] = candidate if is_http_url(candidate) else ""

    excluded: dict[str, list[int]] = {}
    raw_terms = form.get("excluded_terms") or {}
    if isinstance(raw_terms, dict):
        for taxonomy, values in raw_terms.items():
            term_ids = sorted({tid for tid in (_as_int(item) for item in _as_list(values)) if tid is not None and tid > 0})
            if term_ids:
                excluded[str(taxonomy).strip().lower()] = term_ids
    clean["excluded_terms"] = excluded
    return clean


def sanitize_genres(values: list[Any]) -> list[str]:
    allowed = {genre.lower(): genre for genre in ALLOWED_GENRES}
    genres: list[str] = []
    for value in values:
        for token in str(value).split(","):
            genre = allowed.get(token.strip().lower())
            if genre and genre not in genres:
                genres.append(genre)
    return genres


def sitemap_config(config: Config) -> SitemapConfig:
    settings = config.sitemap
    post_types = tuple(settings.post_types) or tuple(DEFAULT_POST_TYPES)
    return SitemapConfig(
        enabled=settings.enabled,
        publication_name=settings.publication_name or config.site.name,
        post_types=post_types,
        window_hours=WINDOW_HOURS,
        max_urls=MAX_URLS,
        cache_ttl=CACHE_TTL_SECONDS,
        language=news_language(config.site.locale),
        default_genres=tuple(sanitize_genres(settings.default_genres)),
        keywords_enabled=settings.keywords_enabled,
        image_license_url=settings.image_license_url or None,
        excluded_terms={
            taxonomy: frozenset(term_ids)
            for taxonomy, term_ids in settings.excluded_terms.items()
        },
        ping_enabled=settings.ping_enabled,
        respect_noindex=RESPECT_NOINDEX,
        stylesheet_url=settings.stylesheet_url or None,
    )


def news_language(locale: str) -> str:
    return (locale or "en")[:2].lower()


def sitemap_url(config: Config) -> str:
    return config.site.url.rstrip("/") + "/news-sitemap.xml"


def _build_config(cfg: dict[str, Any]) -> Config:
    site_cfg = cfg.get("site") or {}
    sitemap_cfg = cfg.get("sitemap") or {}
    ping_cfg = cfg.get("ping") or {}
    build_cfg = cfg.get("build") or {}
    jobs_cfg = cfg.get("jobs") or {}

    site = SiteConfig(
        name=str(site_cfg.get("name")),
        url=str(site_cfg.get("url")),
        locale=str(site_cfg.get("locale")),
        post_types=list(site_cfg.get("post_types")),
    )

    sitemap = SitemapSettings(
        enabled=bool(sitemap_cfg.get("enabled")),
        publication_name=str(sitemap_cfg.get("publication_name")),
        post_types=list(sitemap_cfg.get("post_types")),
        default_genres=list(sitemap_cfg.get("default_genres")),
        keywords_enabled=bool(sitemap_cfg.get("keywords_enabled")),
        image_license_url=str(sitemap_cfg.get("image_license_url")),
        excluded_terms={
            str(taxonomy): [int(item) for item in term_ids]
            for taxonomy, term_ids in (sitemap_cfg.get("excluded_terms") or {}).items()
        },
        ping_enabled=bool(sitemap_cfg.get("ping_enabled")),
        stylesheet_url=str(sitemap_cfg.get("stylesheet_url")),
    )

    ping = PingConfig(
        timeout_seconds=int(ping_cfg.get("timeout_seconds")),
        user_agent=str(ping_cfg.get("user_agent")),
    )

    build = BuildConfig(
        timeout_seconds=int(build_cfg.get("timeout_seconds")),
        lock_ttl_seconds=int(build_cfg.get("lock_ttl_seconds")),
    )

    jobs = JobsConfig(
        lock_timeout_seconds=int(jobs_cfg.get("lock_timeout_seconds")),
        prewarm_delay_seconds=int(jobs_cfg.get("prewarm_delay_seconds")),
        initial_delay_seconds=int(jobs_cfg.get("initial_delay_seconds")),
    )

    return Config(site=site, sitemap=sitemap, ping=ping, build=build, jobs=jobs)


def _merge_defaults(defaults: dict[str, Any], overrides: dict[str, Any]) -> dict[str, Any]:
    merged = _deep_copy(defaults)
    for key, value in overrides.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict) and merged[key]:
            merged[key] = _merge_defaults(merged[key], value)
        else:
            merged[key] = value
    return merged


def _as_bool(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in ("1", "true", "yes", "on")
    return bool(value)


def _as_list(value: Any) -> list[Any]:
    if value is None:
        return []
    if isinstance(value, (list, tuple, set)):
        return list(value)
    return [value]


def _as_int(value: Any) -> int | None:
    try:
        return int(str(value).strip())
    except (TypeError, ValueError):
        return None


def _deep_copy(value: dict[str, Any]) -> dict[str, Any]:
    return json.loads(json.dumps(value))
