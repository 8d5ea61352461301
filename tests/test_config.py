import copy

import pytest

from newsmap.config import (
    CACHE_TTL_SECONDS,
    CONFIG_KEY,
    DEFAULT_CONFIG,
    MAX_URLS,
    WINDOW_HOURS,
    ConfigError,
    get_runtime_config,
    load_config_file,
    load_runtime_config,
    news_language,
    sanitize_genres,
    sanitize_sitemap_settings,
    set_runtime_config,
    sitemap_config,
    sitemap_url,
    validate_runtime_config,
)
from newsmap.storage import get_setting, init_db, set_setting


def test_runtime_config_bootstraps_defaults(tmp_path):
    conn = init_db(str(tmp_path / "state.sqlite3"))

    cfg = get_runtime_config(conn)

    assert cfg == DEFAULT_CONFIG
    assert get_setting(conn, CONFIG_KEY, None) == DEFAULT_CONFIG


def test_validate_reports_missing_unknown_and_wrong_types():
    cfg = copy.deepcopy(DEFAULT_CONFIG)
    del cfg["ping"]
    cfg["extra"] = 1
    cfg["sitemap"]["enabled"] = "yes"
    cfg["build"]["timeout_seconds"] = True
    cfg["sitemap"]["excluded_terms"] = {"category": ["3"]}

    errors = validate_runtime_config(cfg)

    assert "missing config.runtime.ping" in errors
    assert "unknown config.runtime.extra" in errors
    assert "config.runtime.sitemap.enabled must be a boolean" in errors
    assert "config.runtime.build.timeout_seconds must be an integer" in errors
    assert "config.runtime.sitemap.excluded_terms.category must be a list of integers" in errors


def test_set_runtime_config_rejects_invalid(tmp_path):
    conn = init_db(str(tmp_path / "state.sqlite3"))

    with pytest.raises(ConfigError):
        set_runtime_config(conn, {"site": {"name": "Bad"}})


def test_stored_invalid_config_raises(tmp_path):
    conn = init_db(str(tmp_path / "state.sqlite3"))
    set_setting(conn, CONFIG_KEY, {"site": {}})

    with pytest.raises(ConfigError):
        load_runtime_config(conn)


def test_sitemap_config_applies_constants_and_fallbacks(tmp_path):
    conn = init_db(str(tmp_path / "state.sqlite3"))
    cfg = copy.deepcopy(DEFAULT_CONFIG)
    cfg["site"]["name"] = "Morning Herald"
    cfg["site"]["locale"] = "de_DE"
    cfg["site"]["url"] = "https://herald.example.com/"
    cfg["sitemap"]["excluded_terms"] = {"category": [4, 9]}
    cfg["sitemap"]["default_genres"] = ["opinion", "Nope"]
    set_runtime_config(conn, cfg)

    config = load_runtime_config(conn)
    settings = sitemap_config(config)

    assert settings.publication_name == "Morning Herald"
    assert settings.language == "de"
    assert settings.window_hours == WINDOW_HOURS == 48
    assert settings.max_urls == MAX_URLS == 1000
    assert settings.cache_ttl == CACHE_TTL_SECONDS == 600
    assert settings.respect_noindex is True
    assert settings.post_types == ("post",)
    assert settings.default_genres == ("Opinion",)
    assert settings.excluded_terms == {"category": frozenset({4, 9})}
    assert settings.image_license_url is None
    assert sitemap_url(config) == "https://herald.example.com/news-sitemap.xml"


def test_news_language():
    assert news_language("en_US") == "en"
    assert news_language("PT-br") == "pt"
    assert news_language("") == "en"


def test_sanitize_settings_falls_back_to_default_post_type():
    clean = sanitize_sitemap_settings(
        {"post_types": ["attachment", "product"], "keywords_enabled": "on"},
        ["post", "page", "attachment"],
    )

    assert clean["post_types"] == ["post"]
    assert clean["keywords_enabled"] is True
    assert clean["enabled"] is False
    assert validate_runtime_config({**DEFAULT_CONFIG, "sitemap": clean}) == []


def test_sanitize_settings_keeps_valid_values():
    clean = sanitize_sitemap_settings(
        {
            "enabled": True,
            "post_types": ["Page", "post", "page"],
            "stylesheet_url": " https://news.example.com/news.xsl ",
            "excluded_terms": {"Category": "12", "post_tag": ["-1"]},
            "ping_enabled": "0",
        },
        ["post", "page"],
    )

    assert clean["post_types"] == ["page", "post"]
    assert clean["stylesheet_url"] == "https://news.example.com/news.xsl"
    assert clean["excluded_terms"] == {"category": [12]}
    assert clean["ping_enabled"] is False


def test_sanitize_genres_drops_unknown_tokens():
    assert sanitize_genres(["pressrelease, satire", "OPED", "News"]) == [
        "PressRelease",
        "Satire",
        "OpEd",
    ]


def test_load_config_file_merges_defaults(tmp_path):
    path = tmp_path / "config.yml"
    path.write_text(
        "site:\n  name: Tribune\n  url: https://tribune.example.com\nsitemap:\n  keywords_enabled: true\n",
        encoding="utf-8",
    )

    cfg = load_config_file(str(path))

    assert cfg["site"]["name"] == "Tribune"
    assert cfg["site"]["locale"] == DEFAULT_CONFIG["site"]["locale"]
    assert cfg["sitemap"]["keywords_enabled"] is True
    assert cfg["ping"] == DEFAULT_CONFIG["ping"]


def test_load_config_file_rejects_bad_input(tmp_path):
    broken = tmp_path / "broken.yml"
    broken.write_text("site: [unclosed\n", encoding="utf-8")
    wrong = tmp_path / "wrong.yml"
    wrong.write_text("site:\n  name: 5\n", encoding="utf-8")

    with pytest.raises(ConfigError):
        load_config_file(str(broken))
    with pytest.raises(ConfigError):
        load_config_file(str(wrong))
    with pytest.raises(ConfigError):
        load_config_file(str(tmp_path / "missing.yml"))
