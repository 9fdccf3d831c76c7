import logging
import tempfile
import threading
import xml.etree.ElementTree as ET
from datetime import datetime, timedelta, timezone as dt_timezone
from io import StringIO
from pathlib import Path
from unittest import mock

import requests
from django.core.files.storage import FileSystemStorage
from django.core.management import call_command
from django.core.management.base import CommandError
from django.test import SimpleTestCase, TestCase, override_settings

from catalog.models import BlogPost, Category, Product, Setting
from utils.log_filters import RunIdFilter, current_run
from .aggregator import aggregate, newest_first
from .builder import build, normalize_base_url, parse_timestamp
from .custom_sitemaps import render_set, render_sitemap, render_sitemap_index, w3c_datetime
from .exceptions import InvalidBaseURL, MappingSkip, PublishError, SourceFetchError
from .generator import run
from .publisher import FileSystemDestination, StorageDestination, publish
from .records import BlogPostRow, CategoryRow, ProductRow, SitemapRef, SitemapSet, StaticPage, URLRecord
from .sources import DjangoSource, PostgrestSource, StaticSource

NS = {'sm': 'http://www.sitemaps.org/schemas/sitemap/0.9'}
BASE = 'https://rusdecor.info'
GENERATED = datetime(2024, 2, 1, 12, 0, tzinfo=dt_timezone.utc)


def parse(xml_text):
    return ET.fromstring(xml_text.encode('utf-8'))


def locations(xml_text):
    return [loc.text for loc in parse(xml_text).iter('{%s}loc' % NS['sm'])]


def scenario_source():
    return StaticSource(
        categories=[CategoryRow(slug='sofas', updated_at='2024-01-15T00:00:00Z')],
        products=[ProductRow(id='abc123', updated_at='2024-01-16T00:00:00Z', category_slug='sofas')],
        blog_posts=[BlogPostRow(slug='hello-world', published_at='2024-01-10T00:00:00Z')],
    )


class FailingSource(StaticSource):
    def fetch_products(self):
        raise RuntimeError('backend unavailable')


class FailingDestination(FileSystemDestination):
    def __init__(self, root, failing):
        super().__init__(root)
        self.failing = failing

    def write(self, name, content):
        if name in self.failing:
            raise OSError('disk full')
        super().write(name, content)


class BuilderTests(SimpleTestCase):
    def test_category(self):
        record = build('category', CategoryRow('sofas', '2024-01-15T00:00:00Z'), BASE)
        self.assertEqual(record.location, 'https://rusdecor.info/category/sofas')
        self.assertEqual(record.last_modified, datetime(2024, 1, 15, tzinfo=dt_timezone.utc))
        self.assertEqual(record.change_frequency, 'daily')
        self.assertEqual(record.priority, 0.8)

    def test_product(self):
        record = build('product', ProductRow('abc123', '2024-01-16T00:00:00Z', 'sofas'), BASE)
        self.assertEqual(record.location, 'https://rusdecor.info/category/sofas/product/abc123')
        self.assertEqual(record.change_frequency, 'daily')
        self.assertEqual(record.priority, 0.9)

    def test_product_without_category_is_skipped(self):
        for slug in (None, '', '   '):
            with self.assertRaises(MappingSkip):
                build('product', ProductRow('abc123', '2024-01-16T00:00:00Z', slug), BASE)

    def test_empty_slug_is_skipped(self):
        with self.assertRaises(MappingSkip):
            build('category', CategoryRow(''), BASE)
        with self.assertRaises(MappingSkip):
            build('blog', BlogPostRow(' ', '2024-01-10T00:00:00Z'), BASE)

    def test_blog_post_prefers_updated_at(self):
        post = BlogPostRow('hello-world', '2024-01-10T00:00:00Z', '2024-01-12T08:30:00Z')
        record = build('blog', post, BASE)
        self.assertEqual(record.location, 'https://rusdecor.info/blog/hello-world')
        self.assertEqual(record.last_modified, datetime(2024, 1, 12, 8, 30, tzinfo=dt_timezone.utc))
        self.assertEqual(record.change_frequency, 'weekly')
        self.assertEqual(record.priority, 0.7)

        record = build('blog', BlogPostRow('hello-world', '2024-01-10T00:00:00Z'), BASE)
        self.assertEqual(record.last_modified, datetime(2024, 1, 10, tzinfo=dt_timezone.utc))

    def test_unpublished_blog_post_is_skipped(self):
        with self.assertRaises(MappingSkip):
            build('blog', BlogPostRow('draft', '2024-01-10T00:00:00Z', is_published=False), BASE)

    def test_static_pages(self):
        home = build('static', StaticPage('', 'daily', 1.0), BASE)
        self.assertEqual(home.location, BASE)
        self.assertIsNone(home.last_modified)
        about = build('static', StaticPage('about', 'monthly', 0.6), BASE)
        self.assertEqual(about.location, 'https://rusdecor.info/about')

    def test_slug_is_percent_encoded(self):
        record = build('category', CategoryRow('a/b?c', None), BASE)
        self.assertEqual(record.location, 'https://rusdecor.info/category/a%2Fb%3Fc')
        self.assertIsNone(record.last_modified)

    def test_unknown_kind(self):
        with self.assertRaises(ValueError):
            build('tag', CategoryRow('x'), BASE)

    def test_unparseable_timestamp_is_skipped(self):
        with self.assertRaises(MappingSkip):
            build('category', CategoryRow('sofas', 'yesterday'), BASE)

    def test_naive_timestamps_are_utc(self):
        self.assertEqual(parse_timestamp(datetime(2024, 1, 15, 3, 0)),
                         datetime(2024, 1, 15, 3, 0, tzinfo=dt_timezone.utc))
        moscow = dt_timezone(timedelta(hours=3))
        self.assertEqual(parse_timestamp(datetime(2024, 1, 15, 3, 0, tzinfo=moscow)),
                         datetime(2024, 1, 15, 0, 0, tzinfo=dt_timezone.utc))

    def test_normalize_base_url(self):
        self.assertEqual(normalize_base_url(' https://rusdecor.info/// '), BASE)
        for bad in ('', None, 'rusdecor.info', 'ftp://rusdecor.info'):
            with self.assertRaises(InvalidBaseURL):
                normalize_base_url(bad)


class URLRecordTests(SimpleTestCase):
    def test_validation(self):
        with self.assertRaises(ValueError):
            URLRecord('')
        with self.assertRaises(ValueError):
            URLRecord(BASE, change_frequency='sometimes')
        with self.assertRaises(ValueError):
            URLRecord(BASE, priority=1.5)
        self.assertEqual(URLRecord(BASE, priority=0.0).priority, 0.0)

    def test_set_rejects_foreign_locations(self):
        with self.assertRaises(ValueError):
            SitemapSet(BASE, GENERATED, categories=(URLRecord('https://example.com/x'),))
        with self.assertRaises(ValueError):
            SitemapSet(BASE, GENERATED, blog=(URLRecord('https://rusdecor.info.evil.com/x'),))

    def test_index_has_three_entries(self):
        index = SitemapSet(BASE, GENERATED).index
        self.assertEqual([ref.location for ref in index], [
            'https://rusdecor.info/sitemap-categories.xml',
            'https://rusdecor.info/sitemap-products.xml',
            'https://rusdecor.info/sitemap-blog.xml',
        ])
        self.assertTrue(all(ref.last_modified == GENERATED for ref in index))


class RendererTests(SimpleTestCase):
    def test_literal_output(self):
        record = URLRecord('https://example.com/category/sofas',
                           datetime(2024, 1, 15, tzinfo=dt_timezone.utc), 'daily', 0.8)
        self.assertEqual(render_sitemap([record]), (
            '<?xml version="1.0" encoding="UTF-8"?>\n'
            '<urlset xmlns="http://www.sitemaps.org/schemas/sitemap/0.9">\n'
            '  <url>\n'
            '    <loc>https://example.com/category/sofas</loc>\n'
            '    <lastmod>2024-01-15T00:00:00.000Z</lastmod>\n'
            '    <changefreq>daily</changefreq>\n'
            '    <priority>0.8</priority>\n'
            '  </url>\n'
            '</urlset>\n'
        ))

    def test_escaping_round_trip(self):
        tricky = [
            'https://rusdecor.info/search?q=sofa&page=2',
            'https://rusdecor.info/a<b>c',
            'https://rusdecor.info/say"hi"',
            "https://rusdecor.info/it's",
            'https://rusdecor.info/&amp;already',
        ]
        xml_text = render_sitemap([URLRecord(loc) for loc in tricky])
        self.assertNotIn('q=sofa&page', xml_text)
        self.assertEqual(locations(xml_text), tricky)

        index_text = render_sitemap_index([SitemapRef(loc, GENERATED) for loc in tricky])
        self.assertEqual(locations(index_text), tricky)

    def test_optional_fields_are_omitted(self):
        xml_text = render_sitemap([URLRecord(BASE)])
        self.assertNotIn('lastmod', xml_text)
        self.assertNotIn('changefreq', xml_text)
        self.assertNotIn('priority', xml_text)

    def test_zero_priority_is_rendered(self):
        self.assertIn('<priority>0.0</priority>', render_sitemap([URLRecord(BASE, priority=0.0)]))
        self.assertIn('<priority>1.0</priority>', render_sitemap([URLRecord(BASE, priority=1.0)]))
        self.assertIn('<priority>0.85</priority>', render_sitemap([URLRecord(BASE, priority=0.85)]))

    def test_empty_urlset_is_valid(self):
        root = parse(render_sitemap([]))
        self.assertEqual(root.tag, '{%s}urlset' % NS['sm'])
        self.assertEqual(len(root), 0)

    def test_w3c_datetime(self):
        moment = datetime(2024, 1, 16, 5, 6, 7, 891234, tzinfo=dt_timezone(timedelta(hours=3)))
        self.assertEqual(w3c_datetime(moment), '2024-01-16T02:06:07.891Z')

    def test_index_document(self):
        root = parse(render_sitemap_index(SitemapSet(BASE, GENERATED).index))
        self.assertEqual(root.tag, '{%s}sitemapindex' % NS['sm'])
        entries = root.findall('sm:sitemap', NS)
        self.assertEqual(len(entries), 3)
        self.assertEqual(entries[0].find('sm:lastmod', NS).text, '2024-02-01T12:00:00.000Z')

    def test_order_is_preserved(self):
        records = [URLRecord(f'{BASE}/{name}') for name in ('z', 'a', 'm')]
        self.assertEqual(locations(render_sitemap(records)), [f'{BASE}/z', f'{BASE}/a', f'{BASE}/m'])


class AggregatorTests(SimpleTestCase):
    def test_scenario(self):
        sitemap_set = aggregate(scenario_source(), BASE, now=GENERATED)
        documents = render_set(sitemap_set)

        categories = locations(documents['sitemap-categories.xml'])
        self.assertEqual(len(categories), 8)
        self.assertEqual(categories[:7], [
            BASE, f'{BASE}/catalog', f'{BASE}/sale', f'{BASE}/blog',
            f'{BASE}/about', f'{BASE}/contact', f'{BASE}/calculators',
        ])
        self.assertEqual(categories[7], f'{BASE}/category/sofas')

        products = parse(documents['sitemap-products.xml']).findall('sm:url', NS)
        self.assertEqual(len(products), 1)
        self.assertEqual(products[0].find('sm:loc', NS).text, f'{BASE}/category/sofas/product/abc123')
        self.assertEqual(products[0].find('sm:lastmod', NS).text, '2024-01-16T00:00:00.000Z')

        self.assertEqual(locations(documents['sitemap-blog.xml']), [f'{BASE}/blog/hello-world'])
        self.assertEqual(locations(documents['sitemap.xml']), [
            f'{BASE}/sitemap-categories.xml', f'{BASE}/sitemap-products.xml', f'{BASE}/sitemap-blog.xml',
        ])

    def test_empty_catalog(self):
        sitemap_set = aggregate(StaticSource(), BASE + '/', now=GENERATED)
        documents = render_set(sitemap_set)
        self.assertEqual(len(locations(documents['sitemap-categories.xml'])), 7)
        self.assertEqual(len(parse(documents['sitemap-products.xml'])), 0)
        self.assertEqual(len(parse(documents['sitemap-blog.xml'])), 0)
        self.assertEqual(len(parse(documents['sitemap.xml']).findall('sm:sitemap', NS)), 3)

    def test_unresolved_product_is_skipped_and_counted(self):
        source = StaticSource(products=[
            ProductRow('p1', '2024-01-16T00:00:00Z', 'sofas'),
            ProductRow('orphan', '2024-01-17T00:00:00Z', None),
        ])
        with self.assertLogs('sitemap.aggregator', level='WARNING') as logs:
            sitemap_set = aggregate(source, BASE, now=GENERATED)
        self.assertEqual([r.location for r in sitemap_set.products], [f'{BASE}/category/sofas/product/p1'])
        self.assertEqual(sitemap_set.skipped, {'product': 1})
        self.assertIn('category not resolved', logs.output[0])
        self.assertNotIn('orphan', render_set(sitemap_set)['sitemap-products.xml'])

    def test_only_published_posts(self):
        published = BlogPostRow('visible', '2024-01-10T00:00:00Z')
        source = StaticSource(blog_posts=[published, BlogPostRow('draft', '2024-01-11T00:00:00Z', is_published=False)])
        with self.assertLogs('sitemap.aggregator', level='WARNING'):
            first = aggregate(source, BASE, now=GENERATED)
        self.assertEqual([r.location for r in first.blog], [f'{BASE}/blog/visible'])

        source.blog_posts = [BlogPostRow('visible', '2024-01-10T00:00:00Z', is_published=False)]
        with self.assertLogs('sitemap.aggregator', level='WARNING'):
            second = aggregate(source, BASE, now=GENERATED)
        self.assertEqual(second.blog, ())

    def test_newest_first(self):
        rows = [
            CategoryRow('old', '2023-01-01T00:00:00Z'),
            CategoryRow('undated', None),
            CategoryRow('new', '2024-03-01T00:00:00Z'),
            CategoryRow('b-tie', '2023-06-01T00:00:00Z'),
            CategoryRow('a-tie', '2023-06-01T00:00:00Z'),
        ]
        self.assertEqual([row.slug for row in newest_first(rows, 'categories')],
                         ['new', 'a-tie', 'b-tie', 'old', 'undated'])

        posts = [
            BlogPostRow('first', '2024-01-01T00:00:00Z', '2024-05-01T00:00:00Z'),
            BlogPostRow('second', '2024-02-01T00:00:00Z'),
        ]
        self.assertEqual([row.slug for row in newest_first(posts, 'blog')], ['second', 'first'])

    def test_source_order_does_not_matter(self):
        rows = [ProductRow(str(i), '2024-01-01T00:00:00Z', 'sofas') for i in range(5)]
        forward = aggregate(StaticSource(products=rows), BASE, now=GENERATED)
        backward = aggregate(StaticSource(products=rows[::-1]), BASE, now=GENERATED)
        self.assertEqual(forward, backward)

    def test_fetch_failure_aborts(self):
        for workers in (1, 3):
            with self.assertRaises(SourceFetchError) as ctx:
                aggregate(FailingSource(), BASE, workers=workers)
            self.assertEqual(ctx.exception.collection, 'products')
            self.assertIsInstance(ctx.exception.cause, RuntimeError)

    def test_parallel_fetch_matches_sequential(self):
        sequential = aggregate(scenario_source(), BASE, now=GENERATED)
        parallel = aggregate(scenario_source(), BASE, workers=3, now=GENERATED)
        self.assertEqual(sequential, parallel)

    def test_fetch_timeout(self):
        gate = threading.Event()
        self.addCleanup(gate.set)

        class SlowSource(StaticSource):
            def fetch_blog_posts(self):
                gate.wait(5)
                return []

        for workers in (1, 3):
            with self.subTest(workers=workers):
                with self.assertRaises(SourceFetchError) as ctx:
                    aggregate(SlowSource(), BASE, workers=workers, timeout=0.05)
                self.assertEqual(ctx.exception.collection, 'blog')
                self.assertIn('timed out', str(ctx.exception.cause))

    def test_oversized_document_warns(self):
        rows = [ProductRow(str(i), None, 'sofas') for i in range(3)]
        with mock.patch('utils.config.sitemap_url_limit', 2):
            with self.assertLogs('sitemap.aggregator', level='WARNING') as logs:
                sitemap_set = aggregate(StaticSource(products=rows), BASE, static_pages=[], now=GENERATED)
        self.assertEqual(len(sitemap_set.products), 3)
        self.assertTrue(any('products sitemap has 3 urls' in line for line in logs.output))


class PublisherTests(SimpleTestCase):
    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.addCleanup(self.tmp.cleanup)
        self.sitemap_set = aggregate(scenario_source(), BASE, now=GENERATED)

    def test_writes_four_files(self):
        destination = FileSystemDestination(Path(self.tmp.name) / 'public')
        written = publish(self.sitemap_set, destination)
        self.assertEqual(written, ['sitemap-categories.xml', 'sitemap-products.xml', 'sitemap-blog.xml', 'sitemap.xml'])
        expected = render_set(self.sitemap_set)
        root = Path(self.tmp.name) / 'public'
        self.assertEqual(sorted(p.name for p in root.iterdir()), sorted(expected))
        for name, content in expected.items():
            self.assertEqual((root / name).read_text(encoding='utf-8'), content)

    def test_overwrites_in_place(self):
        destination = FileSystemDestination(self.tmp.name)
        destination.write('sitemap.xml', 'old')
        destination.write('sitemap.xml', 'new')
        self.assertEqual((Path(self.tmp.name) / 'sitemap.xml').read_text(), 'new')

    def test_partial_failure_reports_every_file(self):
        destination = FailingDestination(self.tmp.name, {'sitemap-products.xml'})
        with self.assertLogs('sitemap.publisher', level='ERROR'):
            with self.assertRaises(PublishError) as ctx:
                publish(self.sitemap_set, destination)
        self.assertEqual(list(ctx.exception.failures), ['sitemap-products.xml'])
        self.assertEqual(ctx.exception.written, ['sitemap-categories.xml', 'sitemap-blog.xml', 'sitemap.xml'])
        self.assertTrue((Path(self.tmp.name) / 'sitemap.xml').exists())

    def test_failed_write_leaves_no_temp_file(self):
        destination = FileSystemDestination(self.tmp.name)
        destination.write('sitemap.xml', 'old')
        with mock.patch('sitemap.publisher.os.replace', side_effect=OSError('read-only file system')):
            with self.assertRaises(OSError):
                destination.write('sitemap.xml', 'new')
        self.assertEqual(sorted(p.name for p in Path(self.tmp.name).iterdir()), ['sitemap.xml'])
        self.assertEqual((Path(self.tmp.name) / 'sitemap.xml').read_text(), 'old')

    def test_storage_destination(self):
        storage = FileSystemStorage(location=self.tmp.name, allow_overwrite=True)
        destination = StorageDestination(storage)
        publish(self.sitemap_set, destination)
        publish(self.sitemap_set, destination)
        self.assertEqual(sorted(p.name for p in Path(self.tmp.name).iterdir()),
                         sorted(render_set(self.sitemap_set)))
        for name, content in render_set(self.sitemap_set).items():
            with storage.open(name) as fh:
                self.assertEqual(fh.read().decode('utf-8'), content)

    def test_failed_storage_save_keeps_published_file(self):
        storage = FileSystemStorage(location=self.tmp.name, allow_overwrite=True)
        destination = StorageDestination(storage)
        destination.write('sitemap.xml', 'old')
        with mock.patch.object(storage, 'save', side_effect=OSError('503 Slow Down')):
            with self.assertRaises(OSError):
                destination.write('sitemap.xml', 'new')
        with storage.open('sitemap.xml') as fh:
            self.assertEqual(fh.read().decode('utf-8'), 'old')

    def test_storage_rename_is_a_failure(self):
        storage = mock.Mock()
        storage.save.return_value = 'sitemap_x1y2z3.xml'
        with self.assertRaises(OSError):
            StorageDestination(storage).write('sitemap.xml', '<sitemapindex/>')
        storage.delete.assert_called_once_with('sitemap_x1y2z3.xml')
        storage.exists.assert_not_called()


class DjangoSourceTests(TestCase):
    def setUp(self):
        self.sofas = Category.objects.create(name='Sofas', slug='sofas')
        self.chairs = Category.objects.create(name='Chairs', slug='chairs')
        Category.objects.filter(pk=self.sofas.pk).update(updated_at=datetime(2024, 1, 15, tzinfo=dt_timezone.utc))
        Category.objects.filter(pk=self.chairs.pk).update(updated_at=datetime(2024, 1, 20, tzinfo=dt_timezone.utc))
        self.product = Product.objects.create(name='Chester', category=self.sofas)
        self.orphan = Product.objects.create(name='Orphan', category=None)
        BlogPost.objects.create(title='Hello', slug='hello-world', is_published=True,
                                published_at=datetime(2024, 1, 10, tzinfo=dt_timezone.utc))
        BlogPost.objects.create(title='Draft', slug='draft', is_published=False)

    def test_rows(self):
        source = DjangoSource()
        self.assertEqual([row.slug for row in source.fetch_categories()], ['chairs', 'sofas'])
        products = {row.id: row.category_slug for row in source.fetch_products()}
        self.assertEqual(products, {str(self.product.pk): 'sofas', str(self.orphan.pk): None})
        self.assertEqual([row.slug for row in source.fetch_blog_posts()], ['hello-world'])
        self.assertIsNone(source.fetch_site_url())
        Setting.objects.create(key='site_url', value='https://rusdecor.info/')
        self.assertEqual(source.fetch_site_url(), 'https://rusdecor.info/')

    def test_aggregate(self):
        with self.assertLogs('sitemap.aggregator', level='WARNING'):
            sitemap_set = aggregate(DjangoSource(), BASE, now=GENERATED)
        self.assertEqual([r.location for r in sitemap_set.categories[7:]],
                         [f'{BASE}/category/chairs', f'{BASE}/category/sofas'])
        self.assertEqual([r.location for r in sitemap_set.products],
                         [f'{BASE}/category/sofas/product/{self.product.pk}'])
        self.assertEqual([r.location for r in sitemap_set.blog], [f'{BASE}/blog/hello-world'])
        self.assertEqual(sitemap_set.skipped, {'product': 1})


class PostgrestSourceTests(SimpleTestCase):
    def make_source(self, payloads, max_rows=1000):
        """A session answering like PostgREST, at most ``max_rows`` rows per response."""
        session = mock.Mock()

        def get(url, params, headers, timeout):
            response = mock.Mock()
            table = url.rsplit('/', 1)[-1]
            start = params['offset']
            response.json.return_value = payloads[table][start:start + min(params['limit'], max_rows)]
            response.raise_for_status.return_value = None
            return response

        session.get.side_effect = get
        return PostgrestSource('https://db.example.supabase.co/', 'anon-key', session=session), session

    def calls_for(self, session, table):
        return [c for c in session.get.call_args_list if c.args[0].endswith(f'/rest/v1/{table}')]

    def test_rows(self):
        source, session = self.make_source({
            'categories': [{'slug': 'sofas', 'updated_at': '2024-01-15T00:00:00+00:00'}],
            'products': [
                {'id': 'abc123', 'updated_at': '2024-01-16T00:00:00+00:00', 'categories': {'slug': 'sofas'}},
                {'id': 'orphan', 'updated_at': '2024-01-16T00:00:00+00:00', 'categories': None},
            ],
            'blog_posts': [{'slug': 'hello-world', 'published_at': '2024-01-10T00:00:00+00:00',
                            'updated_at': None, 'is_published': True}],
            'settings': [{'value': 'https://rusdecor.info'}],
        })
        self.assertEqual(source.fetch_categories(), [CategoryRow('sofas', '2024-01-15T00:00:00+00:00')])
        self.assertEqual([row.category_slug for row in source.fetch_products()], ['sofas', None])
        self.assertEqual(source.fetch_blog_posts()[0].slug, 'hello-world')
        self.assertEqual(source.fetch_site_url(), BASE)

        url, = session.get.call_args_list[0].args
        kwargs = session.get.call_args_list[0].kwargs
        self.assertEqual(url, 'https://db.example.supabase.co/rest/v1/categories')
        self.assertEqual(kwargs['headers']['apikey'], 'anon-key')
        self.assertEqual(kwargs['headers']['Authorization'], 'Bearer anon-key')
        blog_params = self.calls_for(session, 'blog_posts')[0].kwargs['params']
        self.assertEqual(blog_params['is_published'], 'eq.true')

    def test_rows_past_the_server_cap_are_fetched(self):
        products = [{'id': f'p{i}', 'updated_at': '2024-01-16T00:00:00+00:00', 'categories': {'slug': 'sofas'}}
                    for i in range(5)]
        source, session = self.make_source({'products': products}, max_rows=2)
        self.assertEqual([row.id for row in source.fetch_products()], ['p0', 'p1', 'p2', 'p3', 'p4'])

        pages = [c.kwargs['params'] for c in self.calls_for(session, 'products')]
        self.assertEqual([params['offset'] for params in pages], [0, 2, 4, 5])
        self.assertTrue(all(params['order'] == 'updated_at.desc,id.asc' for params in pages))

    def test_http_error_becomes_fetch_error(self):
        session = mock.Mock()
        session.get.return_value.raise_for_status.side_effect = requests.HTTPError('503 Service Unavailable')
        source = PostgrestSource('https://db.example.supabase.co', 'anon-key', session=session)
        with self.assertRaises(SourceFetchError) as ctx:
            aggregate(source, BASE)
        self.assertEqual(ctx.exception.collection, 'categories')
        self.assertIsInstance(ctx.exception.cause, requests.HTTPError)


class RunTests(SimpleTestCase):
    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.addCleanup(self.tmp.cleanup)

    def test_success_logs_once(self):
        with self.assertLogs('sitemap.generator', level='INFO') as logs:
            ok = run(base_url=BASE, source=scenario_source(),
                     destination=FileSystemDestination(self.tmp.name), workers=1)
        self.assertTrue(ok)
        self.assertEqual(len(logs.records), 1)
        self.assertIn('Sitemaps generated for https://rusdecor.info', logs.output[0])

    def test_base_url_from_site_setting(self):
        source = scenario_source()
        source.site_url = 'https://shop.rusdecor.info/'
        self.assertTrue(run(source=source, destination=FileSystemDestination(self.tmp.name), workers=1))
        index = (Path(self.tmp.name) / 'sitemap.xml').read_text(encoding='utf-8')
        self.assertIn('<loc>https://shop.rusdecor.info/sitemap-blog.xml</loc>', index)

    def test_fetch_failure_publishes_nothing(self):
        with self.assertLogs('sitemap.generator', level='ERROR') as logs:
            ok = run(base_url=BASE, source=FailingSource(),
                     destination=FileSystemDestination(self.tmp.name), workers=1)
        self.assertFalse(ok)
        self.assertIn('fetching products', logs.output[0])
        self.assertEqual(list(Path(self.tmp.name).iterdir()), [])

    def test_publish_failure(self):
        destination = FailingDestination(self.tmp.name, {'sitemap.xml', 'sitemap-blog.xml'})
        with self.assertLogs('sitemap', level='ERROR') as logs:
            ok = run(base_url=BASE, source=scenario_source(), destination=destination, workers=1)
        self.assertFalse(ok)
        self.assertIn('failed: sitemap-blog.xml, sitemap.xml', logs.output[-1])

    def test_invalid_base_url(self):
        with self.assertLogs('sitemap.generator', level='ERROR'):
            ok = run(base_url='not a url', source=scenario_source(),
                     destination=FileSystemDestination(self.tmp.name), workers=1)
        self.assertFalse(ok)

    @override_settings(SITEMAP_DESTINATION='ftp')
    def test_unknown_destination_logs_once(self):
        with self.assertLogs('sitemap', level='ERROR') as logs:
            ok = run(base_url=BASE, source=scenario_source(), workers=1)
        self.assertFalse(ok)
        self.assertEqual(len(logs.records), 1)
        self.assertIn("Unknown SITEMAP_DESTINATION: 'ftp'", logs.output[0])

    @override_settings(SITEMAP_SOURCE='mongo')
    def test_unknown_source_logs_once(self):
        with self.assertLogs('sitemap', level='ERROR') as logs:
            ok = run(base_url=BASE, destination=FileSystemDestination(self.tmp.name), workers=1)
        self.assertFalse(ok)
        self.assertEqual(len(logs.records), 1)
        self.assertEqual(list(Path(self.tmp.name).iterdir()), [])

    def test_run_id_is_stamped(self):
        seen = []

        class Recorder(logging.Handler):
            def emit(self, record):
                seen.append(record.run_id)

        handler = Recorder()
        handler.addFilter(RunIdFilter())
        logger = logging.getLogger('sitemap.generator')
        logger.addHandler(handler)
        self.addCleanup(logger.removeHandler, handler)
        run(base_url=BASE, source=scenario_source(), destination=FileSystemDestination(self.tmp.name), workers=1)
        self.assertEqual(len(seen), 1)
        self.assertEqual(len(seen[0]), 8)
        self.assertEqual(current_run.get(), '-')


class GenerateSitemapsCommandTests(TestCase):
    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.addCleanup(self.tmp.cleanup)
        sofas = Category.objects.create(name='Sofas', slug='sofas')
        Product.objects.create(name='Chester', category=sofas)
        BlogPost.objects.create(title='Hello', slug='hello-world', is_published=True,
                                published_at=datetime(2024, 1, 10, tzinfo=dt_timezone.utc))

    def call(self, *args):
        call_command('generate_sitemaps', '--source', 'django', '--destination', 'filesystem',
                     '--output-dir', self.tmp.name, '--workers', '1', *args, stdout=StringIO())

    def read(self, name):
        return (Path(self.tmp.name) / name).read_text(encoding='utf-8')

    def test_generates_all_documents(self):
        self.call('--base-url', 'https://rusdecor.info/')
        self.assertEqual(len(locations(self.read('sitemap-categories.xml'))), 8)
        self.assertEqual(len(locations(self.read('sitemap-products.xml'))), 1)
        self.assertEqual(locations(self.read('sitemap-blog.xml')), [f'{BASE}/blog/hello-world'])
        self.assertEqual(len(locations(self.read('sitemap.xml'))), 3)

    def test_site_url_setting_is_the_fallback(self):
        Setting.objects.create(key='site_url', value='https://decor.example.com/')
        self.call()
        self.assertEqual(locations(self.read('sitemap-blog.xml')), ['https://decor.example.com/blog/hello-world'])

    def test_failure_exits_non_zero(self):
        with mock.patch('sitemap.management.commands.generate_sitemaps.get_source', return_value=FailingSource()):
            with self.assertLogs('sitemap.generator', level='ERROR'):
                with self.assertRaises(CommandError):
                    self.call('--base-url', BASE)

    @override_settings(SITEMAP_SOURCE='mongo')
    def test_misconfiguration_exits_non_zero(self):
        with self.assertRaisesMessage(CommandError, "Unknown SITEMAP_SOURCE: 'mongo'"):
            call_command('generate_sitemaps', '--base-url', BASE, '--destination', 'filesystem',
                         '--output-dir', self.tmp.name, stdout=StringIO())

    def test_rerun_is_byte_identical(self):
        self.call('--base-url', BASE)
        first = {name: self.read(name) for name in ('sitemap-categories.xml', 'sitemap-products.xml', 'sitemap-blog.xml')}
        self.call('--base-url', BASE)
        for name, content in first.items():
            self.assertEqual(self.read(name), content)
