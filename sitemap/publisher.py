import logging
import os
from pathlib import Path

from django.conf import settings
from django.core.exceptions import ImproperlyConfigured
from django.core.files.base import ContentFile

from .custom_sitemaps import render_set
from .exceptions import PublishError

logger = logging.getLogger(__name__)


class Destination:
    """Somewhere sitemap files can be overwritten by fixed name."""

    def write(self, name, content):
        raise NotImplementedError


class FileSystemDestination(Destination):
    def __init__(self, root):
        self.root = Path(root)

    def write(self, name, content):
        self.root.mkdir(parents=True, exist_ok=True)
        target = self.root / name
        tmp_path = self.root / f'.{name}.tmp'
        try:
            tmp_path.write_text(content, encoding='utf-8')
            os.replace(tmp_path, target)
        except Exception:
            tmp_path.unlink(missing_ok=True)
            raise

    def __str__(self):
        return str(self.root)


class StorageDestination(Destination):
    """Any Django storage backend, e.g. S3 through django-storages.

    The backend must overwrite existing names (``file_overwrite`` on S3,
    ``allow_overwrite`` on FileSystemStorage) so the published file is only
    ever replaced, never removed first.
    """

    def __init__(self, storage):
        self.storage = storage

    def write(self, name, content):
        saved_name = self.storage.save(name, ContentFile(content.encode('utf-8'), name=name))
        if saved_name != name:
            self.storage.delete(saved_name)
            raise OSError(f'{name} was stored as {saved_name}, storage does not overwrite')

    def __str__(self):
        return self.storage.__class__.__name__


def get_destination(name=None, root=None):
    name = name or settings.SITEMAP_DESTINATION
    if name == 'filesystem':
        return FileSystemDestination(root or settings.SITEMAP_ROOT)
    if name == 'storage':
        from django.core.files.storage import storages
        return StorageDestination(storages[settings.SITEMAP_STORAGE_ALIAS])
    raise ImproperlyConfigured(f'Unknown SITEMAP_DESTINATION: {name!r}')


def publish(sitemap_set, destination):
    """Write all four documents, the index last.

    Every file is attempted even after a failure. Files already written stay
    in place; the caller has to rerun the whole generation.
    """
    written = []
    failures = {}
    for name, content in render_set(sitemap_set).items():
        try:
            destination.write(name, content)
        except Exception as exc:
            logger.error("Could not write %s to %s: %s", name, destination, exc)
            failures[name] = exc
        else:
            written.append(name)
    if failures:
        raise PublishError(failures, written)
    return written
