"""Google News sitemap rendering.

Everything in this module is pure: the same articles and configuration always
produce byte-identical XML. Callers that need caching, locking or timeouts go
through :mod:`newsmap.coordinator`.
"""

from __future__ import annotations

import re
from typing import Iterable, Sequence
from xml.etree import ElementTree
from xml.etree.ElementTree import Element, SubElement
from xml.sax.saxutils import escape

from .config import sanitize_genres
from .hooks import NO_HOOKS, SitemapHooks
from .models import Article, ArticleImage, SitemapConfig
from .utils import comparable_url, is_http_url, isoformat_utc, url_host, xml_safe_text

SITEMAP_NS = "http://www.sitemaps.org/schemas/sitemap/0.9"
NEWS_NS = "http://www.google.com/schemas/sitemap-news/0.9"
IMAGE_NS = "http://www.google.com/schemas/sitemap-image/1.1"
XHTML_NS = "http://www.w3.org/1999/xhtml"

XML_DECLARATION = '<?xml version="1.0" encoding="UTF-8"?>'

WIDE_IMAGE_MIN_WIDTH = 1200
MAX_KEYWORDS = 10
MAX_STOCK_TICKERS = 5
KEYWORD_TAXONOMIES = ("category", "post_tag")
PLACEHOLDER_TERM = "uncategorized"


def select_articles(
    articles: Iterable[Article],
    config: SitemapConfig,
    site_host: str,
    hooks: SitemapHooks = NO_HOOKS,
) -> list[Article]:
    host = (site_host or "").lower()
    selected = []
    for article in articles:
        if article.status != "publish":
            continue
        if not article.url or url_host(article.url) != host:
            continue
        if config.respect_noindex and (article.noindex or article.exclude):
            continue
        if article.seo_canonical_url and comparable_url(article.seo_canonical_url) != comparable_url(
            article.url
        ):
            continue
        if hooks.excludes(article, config):
            continue
        selected.append(article)
    selected.sort(key=lambda item: (item.published_at, item.id), reverse=True)
    return selected[: max(0, config.max_urls)]


def render_sitemap(
    articles: Sequence[Article],
    config: SitemapConfig,
    site_host: str,
    hooks: SitemapHooks = NO_HOOKS,
) -> tuple[str, int]:
    selected = select_articles(articles, config, site_host, hooks)
    urlset = _urlset()
    for article in selected:
        _append_url(urlset, article, config, hooks)
    return _serialize(urlset, config), len(selected)


def build_sitemap(
    articles: Sequence[Article],
    config: SitemapConfig,
    site_host: str,
    hooks: SitemapHooks = NO_HOOKS,
) -> str:
    xml, _ = render_sitemap(articles, config, site_host, hooks)
    return xml


def empty_sitemap(config: SitemapConfig | None = None) -> str:
    return _serialize(_urlset(), config)


def validate_sitemap(xml: str) -> dict[str, object]:
    try:
        root = ElementTree.fromstring(xml.encode("utf-8"))
    except ElementTree.ParseError as exc:
        return {"ok": False, "url_count": 0, "error": f"parse error: {exc}"}
    if root.tag != f"{{{SITEMAP_NS}}}urlset":
        return {"ok": False, "url_count": 0, "error": f"unexpected root {root.tag}"}
    urls = root.findall(f"{{{SITEMAP_NS}}}url")
    for url in urls:
        if url.find(f"{{{SITEMAP_NS}}}loc") is None or url.find(f"{{{NEWS_NS}}}news") is None:
            return {"ok": False, "url_count": len(urls), "error": "url entry missing loc or news"}
    return {"ok": True, "url_count": len(urls), "error": None}


def news_genres(article: Article, config: SitemapConfig, hooks: SitemapHooks = NO_HOOKS) -> list[str]:
    genres = sanitize_genres(list(article.genres)) or list(config.default_genres)
    return sanitize_genres(hooks.genres(article, config, genres))


def news_keywords(article: Article, config: SitemapConfig, hooks: SitemapHooks = NO_HOOKS) -> list[str]:
    if not config.keywords_enabled:
        return []
    names: list[str] = []
    for term in article.terms:
        if term.taxonomy not in KEYWORD_TAXONOMIES:
            continue
        name = " ".join(term.name.split())
        if name and name not in names:
            names.append(name)
    if len(names) == 1 and names[0].lower() == PLACEHOLDER_TERM:
        names = []
    keywords = [name for name in hooks.keywords(article, config, names) if name]
    return keywords[:MAX_KEYWORDS]


def ordered_images(
    article: Article, config: SitemapConfig, hooks: SitemapHooks = NO_HOOKS
) -> list[ArticleImage]:
    images = [image for image in hooks.images(article, config, list(article.images)) if image.url]
    return sorted(images, key=lambda image: 0 if (image.width or 0) >= WIDE_IMAGE_MIN_WIDTH else 1)


def index_entry(loc: str, lastmod) -> dict[str, str]:
    return {"loc": loc, "lastmod": isoformat_utc(lastmod)}


def merge_index_links(links: list[dict[str, str]], entry: dict[str, str]) -> list[dict[str, str]]:
    target = entry["loc"].rstrip("/")
    for link in links:
        if str(link.get("loc", "")).rstrip("/") == target:
            return list(links)
    return [entry, *links]


def inject_into_sitemap_index(xml: str, entry: dict[str, str]) -> str:
    loc = escape(entry["loc"])
    if f"<loc>{loc}</loc>".lower() in xml.lower():
        return xml
    fragment = f"<sitemap><loc>{loc}</loc><lastmod>{escape(entry['lastmod'])}</lastmod></sitemap>"
    patched, count = re.subn(
        r"(<sitemapindex\b[^>]*>)",
        lambda match: match.group(1) + fragment,
        xml,
        count=1,
        flags=re.IGNORECASE,
    )
    return patched if count else xml


def _urlset() -> Element:
    urlset = Element("urlset")
    urlset.set("xmlns", SITEMAP_NS)
    urlset.set("xmlns:news", NEWS_NS)
    urlset.set("xmlns:image", IMAGE_NS)
    urlset.set("xmlns:xhtml", XHTML_NS)
    return urlset


def _append_url(urlset: Element, article: Article, config: SitemapConfig, hooks: SitemapHooks) -> None:
    url = SubElement(urlset, "url")
    _text(url, "loc", article.url)
    _text(url, "lastmod", isoformat_utc(article.modified_at))

    for image in ordered_images(article, config, hooks):
        node = SubElement(url, "image:image")
        _text(node, "image:loc", image.url)
        if image.title:
            _text(node, "image:title", image.title)
        if image.caption:
            _text(node, "image:caption", image.caption)
        license_url = image.license_url or config.image_license_url
        if license_url:
            _text(node, "image:license", license_url)

    news = SubElement(url, "news:news")
    publication = SubElement(news, "news:publication")
    _text(publication, "news:name", config.publication_name)
    _text(publication, "news:language", config.language)
    _text(news, "news:publication_date", isoformat_utc(article.published_at))
    _text(news, "news:title", article.title)

    genres = news_genres(article, config, hooks)
    if genres:
        _text(news, "news:genres", ", ".join(genres))
    keywords = news_keywords(article, config, hooks)
    if keywords:
        _text(news, "news:keywords", ", ".join(keywords))
    tickers = [ticker for ticker in article.stock_tickers if ticker][:MAX_STOCK_TICKERS]
    if tickers:
        _text(news, "news:stock_tickers", ", ".join(tickers))

    for link in hooks.alternates(article, config):
        if not is_http_url(link.href):
            continue
        node = SubElement(url, "xhtml:link")
        node.set("rel", link.rel)
        if link.hreflang:
            node.set("hreflang", xml_safe_text(link.hreflang))
        node.set("href", xml_safe_text(link.href))


def _text(parent: Element, tag: str, value: object) -> Element:
    node = SubElement(parent, tag)
    node.text = xml_safe_text(value)
    return node


def _serialize(urlset: Element, config: SitemapConfig | None) -> str:
    if len(urlset):
        ElementTree.indent(urlset, space="  ")
    body = ElementTree.tostring(urlset, encoding="unicode", short_empty_elements=False)
    lines = [XML_DECLARATION]
    if config is not None and config.stylesheet_url and is_http_url(config.stylesheet_url):
        href = escape(config.stylesheet_url.replace("?>", ""), {'"': "&quot;"})
        lines.append(f'<?xml-stylesheet type="text/xsl" href="{href}"?>')
    lines.append(body)
    return "\n".join(lines) + "\n"
