from __future__ import annotations

from dataclasses import dataclass, field

from .models import AlternateLink, Article, ArticleImage, SitemapConfig


class ArticleFilter:
    def exclude(self, article: Article, config: SitemapConfig) -> bool:
        return False


class ArticleEnricher:
    def genres(self, article: Article, config: SitemapConfig, genres: list[str]) -> list[str]:
        return genres

    def keywords(self, article: Article, config: SitemapConfig, keywords: list[str]) -> list[str]:
        return keywords

    def images(
        self, article: Article, config: SitemapConfig, images: list[ArticleImage]
    ) -> list[ArticleImage]:
        return images

    def alternates(self, article: Article, config: SitemapConfig) -> list[AlternateLink]:
        return []


@dataclass(frozen=True)
class SitemapHooks:
    filters: tuple[ArticleFilter, ...] = field(default_factory=tuple)
    enrichers: tuple[ArticleEnricher, ...] = field(default_factory=tuple)

    def excludes(self, article: Article, config: SitemapConfig) -> bool:
        return any(item.exclude(article, config) for item in self.filters)

    def genres(self, article: Article, config: SitemapConfig, genres: list[str]) -> list[str]:
        for enricher in self.enrichers:
            genres = list(enricher.genres(article, config, genres))
        return genres

    def keywords(self, article: Article, config: SitemapConfig, keywords: list[str]) -> list[str]:
        for enricher in self.enrichers:
            keywords = list(enricher.keywords(article, config, keywords))
        return keywords

    def images(
        self, article: Article, config: SitemapConfig, images: list[ArticleImage]
    ) -> list[ArticleImage]:
        for enricher in self.enrichers:
            images = list(enricher.images(article, config, images))
        return images

    def alternates(self, article: Article, config: SitemapConfig) -> list[AlternateLink]:
        links: list[AlternateLink] = []
        for enricher in self.enrichers:
            links.extend(enricher.alternates(article, config))
        return links


class AmpAlternateEnricher(ArticleEnricher):
    """Adds an ``amphtml`` alternate pointing at ``<permalink><suffix>``."""

    def __init__(self, suffix: str = "amp/") -> None:
        self.suffix = suffix

    def alternates(self, article: Article, config: SitemapConfig) -> list[AlternateLink]:
        base = article.url if article.url.endswith("/") else article.url + "/"
        return [AlternateLink(rel="amphtml", href=base + self.suffix)]


NO_HOOKS = SitemapHooks()
