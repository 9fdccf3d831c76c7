import logging

import requests
from django.apps import apps
from django.conf import settings
from django.core.exceptions import ImproperlyConfigured
from django.db import connection

from .records import BlogPostRow, CategoryRow, ProductRow

logger = logging.getLogger(__name__)


class SitemapSource:
    """Read-only access to the collections the sitemaps are built from.

    Each fetch is independent of the others, so the aggregator may run them
    on separate threads. ``release`` is called on the worker thread once its
    fetch is done.
    """

    def fetch_categories(self):
        raise NotImplementedError

    def fetch_products(self):
        raise NotImplementedError

    def fetch_blog_posts(self):
        raise NotImplementedError

    def fetch_site_url(self):
        return None

    def release(self):
        pass


class DjangoSource(SitemapSource):
    """Reads the catalog app through the Django ORM."""

    def fetch_categories(self):
        Category = apps.get_model('catalog', 'Category')
        categories = Category.objects.only('slug', 'updated_at').order_by('-updated_at')
        return [CategoryRow(slug=category.slug, updated_at=category.updated_at) for category in categories]

    def fetch_products(self):
        Product = apps.get_model('catalog', 'Product')
        # Left join: products without a category come through and get skipped by the builder
        products = Product.objects.select_related('category').order_by('-updated_at')
        return [
            ProductRow(
                id=str(product.pk),
                updated_at=product.updated_at,
                category_slug=product.category.slug if product.category_id else None,
            )
            for product in products
        ]

    def fetch_blog_posts(self):
        BlogPost = apps.get_model('catalog', 'BlogPost')
        posts = BlogPost.objects.filter(is_published=True).only(
            'slug', 'published_at', 'updated_at', 'is_published').order_by('-published_at')
        return [
            BlogPostRow(slug=post.slug, published_at=post.published_at,
                        updated_at=post.updated_at, is_published=post.is_published)
            for post in posts
        ]

    def fetch_site_url(self):
        Setting = apps.get_model('catalog', 'Setting')
        return Setting.objects.filter(key='site_url').values_list('value', flat=True).first()

    def release(self):
        # Worker threads get their own connection; don't leave it open
        connection.close()


class PostgrestSource(SitemapSource):
    """Reads the hosted backend tables through its PostgREST api."""

    def __init__(self, url, api_key, timeout=15, session=None, page_size=1000):
        if not url:
            raise ImproperlyConfigured('POSTGREST_URL is not set')
        self.url = url.rstrip('/')
        self.api_key = api_key
        self.timeout = timeout
        self.page_size = page_size
        self.session = session or requests.Session()

    def _select(self, table, params):
        """Fetch every row of ``table``, a page at a time.

        The server may return fewer rows than asked for (its max-rows cap),
        so paging only stops on an empty page. ``order`` must be unique per
        row or pages can overlap.
        """
        headers = {
            'apikey': self.api_key,
            'Authorization': f'Bearer {self.api_key}',
            'Accept': 'application/json',
        }
        rows = []
        while True:
            page_params = dict(params, limit=self.page_size, offset=len(rows))
            resp = self.session.get(f"{self.url}/rest/v1/{table}", params=page_params, headers=headers,
                                    timeout=self.timeout)
            resp.raise_for_status()
            page = resp.json()
            if not page:
                break
            rows.extend(page)
        logger.debug("Fetched %d rows from %s", len(rows), table)
        return rows

    def fetch_categories(self):
        rows = self._select('categories', {'select': 'slug,updated_at', 'order': 'updated_at.desc,slug.asc'})
        return [CategoryRow(slug=row.get('slug'), updated_at=row.get('updated_at')) for row in rows]

    def fetch_products(self):
        rows = self._select('products', {'select': 'id,updated_at,categories(slug)',
                                         'order': 'updated_at.desc,id.asc'})
        products = []
        for row in rows:
            category = row.get('categories') or {}
            products.append(ProductRow(id=row.get('id'), updated_at=row.get('updated_at'),
                                       category_slug=category.get('slug')))
        return products

    def fetch_blog_posts(self):
        rows = self._select('blog_posts', {
            'select': 'slug,published_at,updated_at,is_published',
            'is_published': 'eq.true',
            'order': 'published_at.desc,slug.asc',
        })
        return [
            BlogPostRow(slug=row.get('slug'), published_at=row.get('published_at'),
                        updated_at=row.get('updated_at'), is_published=bool(row.get('is_published')))
            for row in rows
        ]

    def fetch_site_url(self):
        rows = self._select('settings', {'select': 'value', 'key': 'eq.site_url', 'order': 'key.asc'})
        return rows[0].get('value') if rows else None


class StaticSource(SitemapSource):
    """Collections held in memory."""

    def __init__(self, categories=(), products=(), blog_posts=(), site_url=None):
        self.categories = list(categories)
        self.products = list(products)
        self.blog_posts = list(blog_posts)
        self.site_url = site_url

    def fetch_categories(self):
        return list(self.categories)

    def fetch_products(self):
        return list(self.products)

    def fetch_blog_posts(self):
        return list(self.blog_posts)

    def fetch_site_url(self):
        return self.site_url


def get_source(name=None):
    name = name or settings.SITEMAP_SOURCE
    if name == 'django':
        return DjangoSource()
    if name == 'postgrest':
        return PostgrestSource(settings.POSTGREST_URL, settings.POSTGREST_KEY,
                               timeout=settings.POSTGREST_TIMEOUT)
    raise ImproperlyConfigured(f'Unknown SITEMAP_SOURCE: {name!r}')
