"""Turn catalog and blog rows into sitemap url records.

Everything here is pure: no database, no network, no clock. A row that
cannot produce a well-formed url raises MappingSkip so the caller can
count it and move on.
"""
from datetime import date, datetime, timezone as dt_timezone
from urllib.parse import quote, urlparse

from django.utils import timezone
from django.utils.dateparse import parse_datetime

from utils import config
from .exceptions import InvalidBaseURL, MappingSkip
from .records import StaticPage, URLRecord


def normalize_base_url(base_url):
    base = (base_url or '').strip().rstrip('/')
    parsed = urlparse(base)
    if parsed.scheme not in ('http', 'https') or not parsed.netloc:
        raise InvalidBaseURL(f'Not an absolute site url: {base_url!r}')
    return base


def parse_timestamp(value):
    """Return ``value`` as an aware UTC datetime, or None when it is empty."""
    if value is None or value == '':
        return None
    if isinstance(value, str):
        try:
            parsed = parse_datetime(value.strip())
        except ValueError:
            parsed = None
        if parsed is None:
            raise MappingSkip(f'unparseable timestamp {value!r}')
        value = parsed
    elif isinstance(value, date) and not isinstance(value, datetime):
        value = datetime(value.year, value.month, value.day)
    if timezone.is_naive(value):
        value = timezone.make_aware(value, dt_timezone.utc)
    return value.astimezone(dt_timezone.utc)


def _segment(value, what):
    text = str(value).strip() if value is not None else ''
    if not text:
        raise MappingSkip(f'empty {what}')
    return quote(text, safe='')


def build_category(category, base_url):
    changefreq, priority = config.entity_policies['category']
    return URLRecord(
        location=f"{base_url}/category/{_segment(category.slug, 'slug')}",
        last_modified=parse_timestamp(category.updated_at),
        change_frequency=changefreq,
        priority=priority,
    )


def build_product(product, base_url):
    if not product.category_slug or not str(product.category_slug).strip():
        raise MappingSkip('category not resolved')
    changefreq, priority = config.entity_policies['product']
    category = _segment(product.category_slug, 'category slug')
    return URLRecord(
        location=f"{base_url}/category/{category}/product/{_segment(product.id, 'id')}",
        last_modified=parse_timestamp(product.updated_at),
        change_frequency=changefreq,
        priority=priority,
    )


def build_blog_post(post, base_url):
    if not post.is_published:
        raise MappingSkip('not published')
    changefreq, priority = config.entity_policies['blog']
    return URLRecord(
        location=f"{base_url}/blog/{_segment(post.slug, 'slug')}",
        last_modified=parse_timestamp(post.updated_at or post.published_at),
        change_frequency=changefreq,
        priority=priority,
    )


def build_static_page(page, base_url):
    path = page.path.strip()
    if path and not path.startswith('/'):
        path = '/' + path
    return URLRecord(
        location=base_url + path.rstrip('/'),
        change_frequency=page.change_frequency,
        priority=page.priority,
    )


builders = {
    'category': build_category,
    'product': build_product,
    'blog': build_blog_post,
    'static': build_static_page,
}


def build(kind, entity, base_url):
    try:
        builder = builders[kind]
    except KeyError:
        raise ValueError(f'Unknown entity kind: {kind!r}') from None
    return builder(entity, base_url)


def default_static_pages():
    return [StaticPage(path, changefreq, priority) for path, changefreq, priority in config.static_pages]
