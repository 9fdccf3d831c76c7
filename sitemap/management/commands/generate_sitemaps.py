# Schedule from cron, e.g.
#   0 3 * * * cd /srv/rusdecor && python manage.py generate_sitemaps
# Runs are not coordinated with each other: keep at most one in flight per destination.

from django.core.exceptions import ImproperlyConfigured
from django.core.management.base import BaseCommand, CommandError

from sitemap.generator import run
from sitemap.publisher import get_destination
from sitemap.sources import get_source


class Command(BaseCommand):
    help = 'Generate sitemap.xml and the categories, products and blog sitemaps'

    def add_arguments(self, parser):
        parser.add_argument('--base-url', dest='base_url',
                            help='Site url to build locations from (defaults to the site_url setting)')
        parser.add_argument('--source', choices=['django', 'postgrest'],
                            help='Where catalog data is read from (defaults to SITEMAP_SOURCE)')
        parser.add_argument('--destination', choices=['filesystem', 'storage'],
                            help='Where sitemaps are written (defaults to SITEMAP_DESTINATION)')
        parser.add_argument('--output-dir', dest='output_dir',
                            help='Directory for the filesystem destination (defaults to SITEMAP_ROOT)')
        parser.add_argument('--workers', type=int,
                            help='Parallel collection fetches (defaults to SITEMAP_FETCH_WORKERS)')
        parser.add_argument('--timeout', type=float,
                            help='Seconds to wait for each collection (defaults to SITEMAP_FETCH_TIMEOUT)')

    def handle(self, *args, **options):
        try:
            source = get_source(options['source'])
            destination = get_destination(options['destination'], options['output_dir'])
        except ImproperlyConfigured as exc:
            raise CommandError(f'Sitemap generation failed: {exc}') from exc

        ok = run(base_url=options['base_url'], source=source, destination=destination,
                 workers=options['workers'], timeout=options['timeout'])
        if not ok:
            raise CommandError('Sitemap generation failed, see log for details')

        self.stdout.write(self.style.SUCCESS(f'Successfully generated sitemaps in {destination}'))
