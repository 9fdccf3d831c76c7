sitemap_namespace = 'http://www.sitemaps.org/schemas/sitemap/0.9'

# sitemaps.org protocol limit per document
sitemap_url_limit = 50000

# Order of the sub-sitemaps in the index
sections = ['categories', 'products', 'blog']

sitemap_files = {
    'index': 'sitemap.xml',
    'categories': 'sitemap-categories.xml',
    'products': 'sitemap-products.xml',
    'blog': 'sitemap-blog.xml',
}

# (change frequency, priority) per entity kind
entity_policies = {
    'category': ('daily', 0.8),
    'product': ('daily', 0.9),
    'blog': ('weekly', 0.7),
}

# (path, change frequency, priority). Home is the bare site url.
static_pages = [
    ('', 'daily', 1.0),
    ('/catalog', 'daily', 0.9),
    ('/sale', 'daily', 0.8),
    ('/blog', 'daily', 0.7),
    ('/about', 'monthly', 0.6),
    ('/contact', 'monthly', 0.6),
    ('/calculators', 'monthly', 0.6),
]
