class SitemapError(Exception):
    """Base class for failures that abort a sitemap run."""


class InvalidBaseURL(SitemapError):
    pass


class SourceFetchError(SitemapError):
    """A collection could not be read; nothing gets published."""

    def __init__(self, collection, cause):
        self.collection = collection
        self.cause = cause
        super().__init__(f'Could not fetch {collection}: {cause}')


class PublishError(SitemapError):
    """One or more sitemap files could not be written.

    ``failures`` maps file name to the exception raised for it, ``written``
    lists the files that did reach the destination and were not rolled back.
    """

    def __init__(self, failures, written=()):
        self.failures = dict(failures)
        self.written = list(written)
        names = ', '.join(sorted(self.failures))
        super().__init__(f'Failed to publish {names}')


class MappingSkip(Exception):
    """An entity cannot produce a valid url and is left out of the sitemap."""

    def __init__(self, reason):
        self.reason = reason
        super().__init__(reason)
