from datetime import timezone as dt_timezone
from xml.sax.saxutils import escape

from utils import config

XML_DECLARATION = '<?xml version="1.0" encoding="UTF-8"?>\n'
QUOTE_ENTITIES = {'"': '&quot;', "'": '&apos;'}


def escape_xml(value):
    return escape(str(value), QUOTE_ENTITIES)


def w3c_datetime(value):
    value = value.astimezone(dt_timezone.utc)
    return value.strftime('%Y-%m-%dT%H:%M:%S') + '.%03dZ' % (value.microsecond // 1000)


def format_priority(priority):
    text = ('%.2f' % priority).rstrip('0')
    if text.endswith('.'):
        text += '0'
    return text


def render_sitemap(records):
    xml_content = [XML_DECLARATION, f'<urlset xmlns="{config.sitemap_namespace}">\n']

    for record in records:
        xml_content.append('  <url>\n')
        xml_content.append(f'    <loc>{escape_xml(record.location)}</loc>\n')
        if record.last_modified is not None:
            xml_content.append(f'    <lastmod>{w3c_datetime(record.last_modified)}</lastmod>\n')
        if record.change_frequency is not None:
            xml_content.append(f'    <changefreq>{escape_xml(record.change_frequency)}</changefreq>\n')
        if record.priority is not None:
            xml_content.append(f'    <priority>{format_priority(record.priority)}</priority>\n')
        xml_content.append('  </url>\n')

    xml_content.append('</urlset>\n')
    return ''.join(xml_content)


def render_sitemap_index(refs):
    xml_content = [XML_DECLARATION, f'<sitemapindex xmlns="{config.sitemap_namespace}">\n']

    for ref in refs:
        xml_content.append('  <sitemap>\n')
        xml_content.append(f'    <loc>{escape_xml(ref.location)}</loc>\n')
        xml_content.append(f'    <lastmod>{w3c_datetime(ref.last_modified)}</lastmod>\n')
        xml_content.append('  </sitemap>\n')

    xml_content.append('</sitemapindex>\n')
    return ''.join(xml_content)


def render_set(sitemap_set):
    """Render all four documents, keyed by file name, index last."""
    documents = {}
    for section in config.sections:
        documents[config.sitemap_files[section]] = render_sitemap(getattr(sitemap_set, section))
    documents[config.sitemap_files['index']] = render_sitemap_index(sitemap_set.index)
    return documents
