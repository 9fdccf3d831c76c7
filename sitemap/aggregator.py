import concurrent.futures
import contextvars
import logging
from collections import Counter
from datetime import datetime, timezone as dt_timezone

from django.utils import timezone

from utils import config
from .builder import build, default_static_pages, normalize_base_url, parse_timestamp
from .exceptions import MappingSkip, SourceFetchError
from .records import SitemapSet

logger = logging.getLogger(__name__)

# collection name -> (source method, builder kind)
COLLECTIONS = {
    'categories': ('fetch_categories', 'category'),
    'products': ('fetch_products', 'product'),
    'blog': ('fetch_blog_posts', 'blog'),
}

OLDEST = datetime.min.replace(tzinfo=dt_timezone.utc)


def _fetch(source, collection):
    method = COLLECTIONS[collection][0]
    try:
        return list(getattr(source, method)())
    except SourceFetchError:
        raise
    except Exception as exc:
        raise SourceFetchError(collection, exc) from exc


def _fetch_on_worker(source, collection):
    try:
        return _fetch(source, collection)
    finally:
        source.release()


def fetch_collections(source, workers=1, timeout=None):
    """Read all three collections or raise SourceFetchError for the first that fails.

    Without a timeout and with a single worker the fetches run in the calling
    thread. A timeout always goes through the pool so a hanging fetch can be
    abandoned.
    """
    if workers <= 1 and timeout is None:
        return {collection: _fetch(source, collection) for collection in COLLECTIONS}

    results = {}
    pool = concurrent.futures.ThreadPoolExecutor(max_workers=max(workers, 1), thread_name_prefix='sitemap-fetch')
    try:
        futures = {
            collection: pool.submit(contextvars.copy_context().run, _fetch_on_worker, source, collection)
            for collection in COLLECTIONS
        }
        for collection, future in futures.items():
            try:
                results[collection] = future.result(timeout=timeout)
            except concurrent.futures.TimeoutError as exc:
                raise SourceFetchError(collection, f'timed out after {timeout}s') from exc
    finally:
        # Don't block on a fetch that is still hanging after a failure
        pool.shutdown(wait=False, cancel_futures=True)
    return results


def _stamp(value):
    try:
        return parse_timestamp(value) or OLDEST
    except MappingSkip:
        return OLDEST


def newest_first(rows, collection):
    """Order rows by their freshness timestamp, newest first, ties by key."""
    if collection == 'categories':
        key, stamp = (lambda row: str(row.slug or '')), (lambda row: row.updated_at)
    elif collection == 'products':
        key, stamp = (lambda row: str(row.id or '')), (lambda row: row.updated_at)
    else:
        key, stamp = (lambda row: str(row.slug or '')), (lambda row: row.published_at)
    rows = sorted(rows, key=key)
    return sorted(rows, key=lambda row: _stamp(stamp(row)), reverse=True)


def build_records(kind, rows, base_url, skipped):
    records = []
    for row in rows:
        try:
            records.append(build(kind, row, base_url))
        except MappingSkip as skip:
            skipped[kind] += 1
            logger.warning("Skipping %s %r: %s", kind, row, skip.reason)
    return tuple(records)


def aggregate(source, base_url, static_pages=None, workers=1, timeout=None, now=None):
    base_url = normalize_base_url(base_url)
    collections = fetch_collections(source, workers=workers, timeout=timeout)

    skipped = Counter()
    if static_pages is None:
        static_pages = default_static_pages()
    documents = {'categories': build_records('static', static_pages, base_url, skipped)}
    for collection, rows in collections.items():
        kind = COLLECTIONS[collection][1]
        records = build_records(kind, newest_first(rows, collection), base_url, skipped)
        documents[collection] = documents.get(collection, ()) + records

    for section, records in documents.items():
        if len(records) > config.sitemap_url_limit:
            logger.warning("%s sitemap has %d urls, above the %d allowed per document",
                           section, len(records), config.sitemap_url_limit)

    return SitemapSet(
        base_url=base_url,
        generated_at=now or timezone.now(),
        categories=documents['categories'],
        products=documents['products'],
        blog=documents['blog'],
        skipped=dict(skipped),
    )
