from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Optional, Tuple

from utils import config

CHANGE_FREQUENCY_CHOICES = [
    ('always', 'Always'),
    ('hourly', 'Hourly'),
    ('daily', 'Daily'),
    ('weekly', 'Weekly'),
    ('monthly', 'Monthly'),
    ('yearly', 'Yearly'),
    ('never', 'Never'),
]
CHANGE_FREQUENCIES = frozenset(choice for choice, _ in CHANGE_FREQUENCY_CHOICES)


@dataclass(frozen=True)
class URLRecord:
    location: str
    last_modified: Optional[datetime] = None
    change_frequency: Optional[str] = None
    # None means no priority is asserted; 0.0 is a real value and gets rendered
    priority: Optional[float] = None

    def __post_init__(self):
        if not self.location:
            raise ValueError('URLRecord needs a location')
        if self.change_frequency is not None and self.change_frequency not in CHANGE_FREQUENCIES:
            raise ValueError(f'Invalid change frequency: {self.change_frequency!r}')
        if self.priority is not None and not 0.0 <= self.priority <= 1.0:
            raise ValueError(f'Priority out of range: {self.priority!r}')


@dataclass(frozen=True)
class SitemapRef:
    location: str
    last_modified: datetime


@dataclass(frozen=True)
class StaticPage:
    path: str
    change_frequency: str
    priority: float


# Rows handed out by a SitemapSource. Timestamps are datetimes or ISO-8601 strings.

@dataclass(frozen=True)
class CategoryRow:
    slug: str
    updated_at: Any = None


@dataclass(frozen=True)
class ProductRow:
    id: str
    updated_at: Any = None
    category_slug: Optional[str] = None


@dataclass(frozen=True)
class BlogPostRow:
    slug: str
    published_at: Any = None
    updated_at: Any = None
    is_published: bool = True


@dataclass(frozen=True)
class SitemapSet:
    """The four documents of one generation run.

    Built once by the aggregator, rendered and published, then dropped.
    """
    base_url: str
    generated_at: datetime
    categories: Tuple[URLRecord, ...] = ()
    products: Tuple[URLRecord, ...] = ()
    blog: Tuple[URLRecord, ...] = ()
    skipped: Dict[str, int] = field(default_factory=dict, compare=False, hash=False)

    def __post_init__(self):
        prefix = self.base_url + '/'
        for section in config.sections:
            for record in getattr(self, section):
                if record.location != self.base_url and not record.location.startswith(prefix):
                    raise ValueError(f'{record.location} is not under {self.base_url}')

    @property
    def index(self) -> Tuple[SitemapRef, ...]:
        return tuple(
            SitemapRef(f"{self.base_url}/{config.sitemap_files[section]}", self.generated_at)
            for section in config.sections
        )

    def counts(self):
        return {section: len(getattr(self, section)) for section in config.sections}
