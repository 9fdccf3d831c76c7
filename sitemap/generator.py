import logging
import time
import uuid

from django.conf import settings
from django.core.exceptions import ImproperlyConfigured

from utils.log_filters import current_run
from .aggregator import aggregate
from .builder import normalize_base_url
from .exceptions import InvalidBaseURL, PublishError, SourceFetchError
from .publisher import get_destination, publish
from .sources import get_source

logger = logging.getLogger(__name__)


def resolve_base_url(source, override=None):
    """Command line override, then the site_url setting, then settings.SITE_URL."""
    if override:
        return normalize_base_url(override)
    try:
        site_url = source.fetch_site_url()
    except Exception as exc:
        raise SourceFetchError('settings', exc) from exc
    return normalize_base_url(site_url or settings.SITE_URL)


def run(base_url=None, source=None, destination=None, workers=None, timeout=None):
    """Generate and publish the sitemaps once. Returns True on full success."""
    token = current_run.set(uuid.uuid4().hex[:8])
    started = time.monotonic()
    try:
        if workers is None:
            workers = settings.SITEMAP_FETCH_WORKERS
        if timeout is None:
            timeout = settings.SITEMAP_FETCH_TIMEOUT

        try:
            source = source or get_source()
            destination = destination or get_destination()
            base = resolve_base_url(source, base_url)
            sitemap_set = aggregate(source, base, workers=workers, timeout=timeout)
            written = publish(sitemap_set, destination)
        except (ImproperlyConfigured, InvalidBaseURL) as exc:
            logger.error("Sitemap generation failed: %s", exc)
            return False
        except SourceFetchError as exc:
            logger.error("Sitemap generation failed fetching %s, nothing published: %s",
                         exc.collection, exc.cause)
            return False
        except PublishError as exc:
            logger.error("Sitemap publication incomplete, failed: %s; written: %s",
                         ', '.join(sorted(exc.failures)), ', '.join(exc.written) or 'none')
            return False

        counts = sitemap_set.counts()
        logger.info("Sitemaps generated for %s in %.2fs: %s to %s (%s; skipped %s)",
                    base, time.monotonic() - started, ', '.join(written), destination,
                    ', '.join(f'{section}={count}' for section, count in counts.items()),
                    sum(sitemap_set.skipped.values()))
        return True
    finally:
        current_run.reset(token)
