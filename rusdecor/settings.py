import os
from pathlib import Path

from dotenv import load_dotenv

BASE_DIR = Path(__file__).resolve().parent.parent
load_dotenv(BASE_DIR / '.env')

SECRET_KEY = os.getenv('SECRET_KEY', 'django-insecure-local-only')
DEBUG = os.getenv('DEBUG', '0') == '1'
ALLOWED_HOSTS = [host for host in os.getenv('ALLOWED_HOSTS', '').split(',') if host]

INSTALLED_APPS = [
    'django.contrib.contenttypes',
    'mptt',
    'catalog',
    'sitemap',
]

if os.getenv('DBHOST'):
    import pymysql
    pymysql.install_as_MySQLdb()

    DATABASES = {
        'default': {
            'ENGINE': 'django.db.backends.mysql',
            'HOST': os.getenv('DBHOST'),
            'PORT': os.getenv('DBPORT', '3306'),
            'NAME': os.getenv('DBNAME'),
            'USER': os.getenv('DBUSER'),
            'PASSWORD': os.getenv('MYDBPSSWD'),
            'OPTIONS': {'charset': 'utf8mb4'},
        }
    }
else:
    DATABASES = {
        'default': {
            'ENGINE': 'django.db.backends.sqlite3',
            'NAME': BASE_DIR / 'db.sqlite3',
        }
    }

DEFAULT_AUTO_FIELD = 'django.db.models.BigAutoField'
USE_TZ = True
TIME_ZONE = 'UTC'

SITE_URL = os.getenv('SITE_URL', 'https://rusdecor.info')

# Sitemap generation
SITEMAP_SOURCE = os.getenv('SITEMAP_SOURCE', 'django')
SITEMAP_DESTINATION = os.getenv('SITEMAP_DESTINATION', 'filesystem')
SITEMAP_ROOT = os.getenv('SITEMAP_ROOT', str(BASE_DIR / 'public'))
SITEMAP_STORAGE_ALIAS = 'sitemaps'
SITEMAP_FETCH_WORKERS = int(os.getenv('SITEMAP_FETCH_WORKERS', '3'))
SITEMAP_FETCH_TIMEOUT = float(os.getenv('SITEMAP_FETCH_TIMEOUT')) if os.getenv('SITEMAP_FETCH_TIMEOUT') else None

POSTGREST_URL = os.getenv('POSTGREST_URL', '')
POSTGREST_KEY = os.getenv('POSTGREST_KEY', '')
POSTGREST_TIMEOUT = 15

STORAGES = {
    'default': {'BACKEND': 'django.core.files.storage.FileSystemStorage'},
    'sitemaps': {
        'BACKEND': 'django.core.files.storage.FileSystemStorage',
        'OPTIONS': {'location': SITEMAP_ROOT, 'allow_overwrite': True},
    },
}
if os.getenv('SITEMAP_S3_BUCKET'):
    STORAGES['sitemaps'] = {
        'BACKEND': 'storages.backends.s3.S3Storage',
        'OPTIONS': {
            'bucket_name': os.getenv('SITEMAP_S3_BUCKET'),
            'file_overwrite': True,
            'object_parameters': {
                'CacheControl': 'max-age=3600',
                'ContentType': 'application/xml',
            },
        },
    }

LOGGING = {
    'version': 1,
    'disable_existing_loggers': False,
    'filters': {
        'run_id': {'()': 'utils.log_filters.RunIdFilter'},
    },
    'formatters': {
        'verbose': {
            'format': '%(asctime)s %(levelname)s [%(run_id)s] %(name)s: %(message)s',
        },
    },
    'handlers': {
        'console': {
            'class': 'logging.StreamHandler',
            'filters': ['run_id'],
            'formatter': 'verbose',
        },
    },
    'loggers': {
        'sitemap': {
            'handlers': ['console'],
            'level': os.getenv('SITEMAP_LOG_LEVEL', 'INFO'),
            'propagate': False,
        },
    },
}
