from datetime import datetime, timedelta, timezone

import pytest

from newsmap import content as content_module
from newsmap.config import load_runtime_config, sitemap_config
from newsmap.content import (
    ArticleImportError,
    SqliteContentSource,
    article_from_record,
    import_articles,
    is_noindex,
    load_articles_file,
    plain_title,
)
from newsmap.coordinator import BuildCoordinator
from newsmap.storage import get_article_row, init_db
from newsmap.utils import isoformat_utc, utc_now

SITE_URL = "https://news.example.com"


def _doc(article_id: int, hours_ago: float = 1, **extra) -> dict:
    doc = {
        "id": article_id,
        "url": f"{SITE_URL}/story-{article_id}/",
        "title": f"Story {article_id}",
        "published_at": isoformat_utc(utc_now() - timedelta(hours=hours_ago)),
    }
    doc.update(extra)
    return doc


def _source(tmp_path, documents) -> SqliteContentSource:
    db_path = str(tmp_path / "state.sqlite3")
    conn = init_db(db_path)
    import_articles(conn, documents)
    return SqliteContentSource(db_path, SITE_URL)


def test_query_recent_orders_filters_and_caps(tmp_path):
    source = _source(
        tmp_path,
        [
            _doc(1, hours_ago=3),
            _doc(2, hours_ago=1),
            _doc(3, hours_ago=2, status="draft"),
            _doc(4, hours_ago=2, post_type="page"),
            _doc(5, hours_ago=60),
            _doc(6, hours_ago=5),
        ],
    )
    after = utc_now() - timedelta(hours=48)

    assert source.query_recent(["post"], after, 10) == [2, 1, 6]
    assert source.query_recent(["post"], after, 2) == [2, 1]
    assert source.query_recent(["post", "page"], after, 10) == [2, 4, 1, 6]
    assert source.get_site_host() == "news.example.com"


def test_query_recent_skips_excluded_terms(tmp_path):
    source = _source(
        tmp_path,
        [
            _doc(1, terms=[{"taxonomy": "category", "term_id": 7, "name": "Sponsored"}]),
            _doc(2, terms=[{"taxonomy": "post_tag", "term_id": 7, "name": "Seven"}]),
            _doc(3),
        ],
    )
    after = utc_now() - timedelta(hours=48)

    ids = source.query_recent(["post"], after, 10, {"category": frozenset({7})})

    assert sorted(ids) == [2, 3]


def test_fetch_builds_article_view(tmp_path):
    source = _source(
        tmp_path,
        [
            _doc(
                1,
                title="Markets <b>rally</b> &amp; close",
                genres=["Blog"],
                stock_tickers=["NYSE:IBM", " "],
                images=[{"url": f"{SITE_URL}/a.jpg", "width": 1400, "caption": "A"}],
                terms=[{"taxonomy": "category", "term_id": 2, "name": "Business"}],
                seo_canonical_url=f"{SITE_URL}/story-1/",
            )
        ],
    )

    article = source.fetch(1)

    assert article.title == "Markets rally & close"
    assert article.genres == ("Blog",)
    assert article.stock_tickers == ("NYSE:IBM",)
    assert article.images[0].width == 1400
    assert article.terms[0].name == "Business"
    assert article.modified_at == article.published_at
    assert article.noindex is False
    assert source.fetch(99) is None


def test_seo_plugins_mark_noindex(tmp_path):
    source = _source(
        tmp_path,
        [
            _doc(1, meta={"_yoast_wpseo_meta-robots-noindex": "1"}),
            _doc(2, meta={"rank_math_robots": ["index", "noindex"]}),
            _doc(3, meta={"_aioseo_robots_default": {"noindex": True}}),
            _doc(4, meta={"_exclude_from_news_sitemap": "1"}),
            _doc(5, meta={"_yoast_wpseo_meta-robots-noindex": "2"}),
        ],
    )

    assert [source.fetch(i).noindex for i in range(1, 6)] == [True, True, True, False, False]
    assert source.fetch(4).exclude is True


def test_is_noindex_handles_missing_meta():
    assert is_noindex(None) is False
    assert is_noindex({"rank_math_robots": "noindex"}) is False


def test_plain_title_collapses_whitespace():
    assert plain_title("  Breaking\n\tnews  ") == "Breaking news"
    assert plain_title("<p>Hello <i>world</i></p>") == "Hello world"


def test_article_from_record_requires_publish_date():
    with pytest.raises(ValueError):
        article_from_record({"id": 1, "url": f"{SITE_URL}/x/", "title": "x", "published_at": "soon"})


def test_import_rejects_invalid_documents(tmp_path):
    conn = init_db(str(tmp_path / "state.sqlite3"))

    with pytest.raises(ArticleImportError):
        import_articles(conn, [{"id": 1, "title": "no url"}])
    with pytest.raises(ArticleImportError):
        import_articles(conn, [_doc(1, published_at="yesterday-ish")])


def test_import_normalizes_timestamps_and_replaces_terms(tmp_path):
    conn = init_db(str(tmp_path / "state.sqlite3"))
    import_articles(
        conn,
        [
            _doc(
                1,
                published_at="2025-03-01T14:00:00+02:00",
                terms=[{"taxonomy": "category", "term_id": 1, "name": "Old"}],
            )
        ],
    )
    import_articles(
        conn,
        [
            _doc(
                1,
                published_at="2025-03-01T14:00:00+02:00",
                terms=[{"taxonomy": "category", "term_id": 2, "name": "New"}],
            )
        ],
    )

    row = get_article_row(conn, 1)

    assert row["published_at"] == "2025-03-01T12:00:00+00:00"
    assert row["modified_at"] == "2025-03-01T12:00:00+00:00"
    assert row["terms"] == [{"taxonomy": "category", "term_id": 2, "name": "New"}]


def test_load_articles_file_accepts_list_or_mapping(tmp_path):
    listed = tmp_path / "list.yml"
    listed.write_text(
        "- id: 1\n  url: https://news.example.com/a/\n  title: A\n  published_at: 2025-03-01T12:00:00Z\n",
        encoding="utf-8",
    )
    mapped = tmp_path / "mapped.yml"
    mapped.write_text(
        "articles:\n  - id: 2\n    url: https://news.example.com/b/\n    title: B\n"
        "    published_at: '2025-03-01T12:00:00+00:00'\n",
        encoding="utf-8",
    )

    assert [doc["id"] for doc in load_articles_file(str(listed))] == [1]
    assert [doc["id"] for doc in load_articles_file(str(mapped))] == [2]

    conn = init_db(str(tmp_path / "state.sqlite3"))
    assert import_articles(conn, load_articles_file(str(listed))) == [1]
    published = datetime.fromisoformat(get_article_row(conn, 1)["published_at"])
    assert published == datetime(2025, 3, 1, 12, 0, tzinfo=timezone.utc)


def test_load_articles_file_rejects_scalars(tmp_path):
    path = tmp_path / "bad.yml"
    path.write_text("just a string\n", encoding="utf-8")

    with pytest.raises(ArticleImportError):
        load_articles_file(str(path))


def test_build_reuses_one_connection(tmp_path, monkeypatch):
    source = _source(tmp_path, [_doc(1), _doc(2), _doc(3, hours_ago=2)])
    opened = []
    real_connect = content_module.connect_db

    def counting_connect(path):
        opened.append(path)
        return real_connect(path)

    monkeypatch.setattr(content_module, "connect_db", counting_connect)
    conn = init_db(source.db_path)
    config = sitemap_config(load_runtime_config(conn))
    coordinator = BuildCoordinator(conn, config, source, build_timeout_seconds=5)

    xml, count = coordinator.build_document()

    assert count == 3
    assert f"{SITE_URL}/story-3/" in xml
    assert len(opened) == 1

    source.fetch(1)
    source.fetch(2)
    assert len(opened) == 3
