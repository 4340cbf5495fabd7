from datetime import timedelta
from pathlib import Path
from dotenv import load_dotenv
import os

BASE_DIR = Path(__file__).resolve().parent.parent
# optionally load .env in development
load_dotenv(BASE_DIR / ".env")


def _env_bool(name, default="False"):
    return os.getenv(name, default).lower() in ("1", "true", "yes")


DEBUG = _env_bool("DJANGO_DEBUG")
SECRET_KEY = os.getenv("DJANGO_SECRET_KEY", "NOT_secure_use_only_Local_TEsting")
if not DEBUG and SECRET_KEY == "NOT_secure_use_only_Local_TEsting" and not _env_bool("PRESSFLEET_TESTING"):
    raise Exception("Missing DJANGO_SECRET_KEY for production")

ALLOWED_HOSTS = os.getenv("ALLOWED_HOSTS", "localhost,127.0.0.1").split(",")
CORS_ALLOWED_ORIGINS = [
    o for o in os.getenv("CORS_ALLOWED_ORIGINS", "http://localhost:3001").split(",") if o
]

# used by encrypted_model_fields for provider tokens and site admin passwords
FIELD_ENCRYPTION_KEY = os.getenv("FIELD_ENCRYPTION_KEY", "tg93UNJdqF9ZOmNmWlHXBQavakvYX2gqEVEnDXFIEvs=")


# Application definition

INSTALLED_APPS = [
    'django.contrib.admin',
    'django.contrib.auth',
    'django.contrib.contenttypes',
    'django.contrib.sessions',
    'django.contrib.messages',
    'django.contrib.staticfiles',

    # third-party
    'rest_framework',
    'rest_framework_simplejwt',
    'corsheaders',
    'django_apscheduler',
    'drf_spectacular',
    'encrypted_model_fields',

    # your apps
    'accounts',  # provider credentials
    'fleet',
]

MIDDLEWARE = [
    'corsheaders.middleware.CorsMiddleware',
    'django.middleware.security.SecurityMiddleware',
    'django.contrib.sessions.middleware.SessionMiddleware',
    'django.middleware.common.CommonMiddleware',
    'django.middleware.csrf.CsrfViewMiddleware',
    'django.contrib.auth.middleware.AuthenticationMiddleware',
    'django.contrib.messages.middleware.MessageMiddleware',
    'django.middleware.clickjacking.XFrameOptionsMiddleware',
]

ROOT_URLCONF = 'pressfleet.urls'

TEMPLATES = [
    {
        'BACKEND': 'django.template.backends.django.DjangoTemplates',
        'DIRS': [],
        'APP_DIRS': True,
        'OPTIONS': {
            'context_processors': [
                'django.template.context_processors.debug',
                'django.template.context_processors.request',
                'django.contrib.auth.context_processors.auth',
                'django.contrib.messages.context_processors.messages',
            ],
        },
    },
]

WSGI_APPLICATION = 'pressfleet.wsgi.application'

REST_FRAMEWORK = {
    'DEFAULT_SCHEMA_CLASS': 'drf_spectacular.openapi.AutoSchema',
    "DEFAULT_AUTHENTICATION_CLASSES": (
        "rest_framework_simplejwt.authentication.JWTAuthentication",
    ),
    "DEFAULT_PERMISSION_CLASSES": (
        "rest_framework.permissions.IsAuthenticated",
    ),
}

SPECTACULAR_SETTINGS = {
    'TITLE': 'PressFleet',
    'DESCRIPTION': 'Hetzner servers and WordPress sites reconciled through Dokploy',
    'VERSION': '0.1.0',
    'SERVE_INCLUDE_SCHEMA': False,
}

SIMPLE_JWT = {
    "ACCESS_TOKEN_LIFETIME": timedelta(days=1),
    "REFRESH_TOKEN_LIFETIME": timedelta(days=30),
    "ROTATE_REFRESH_TOKENS": True,
}

# Database
# https://docs.djangoproject.com/en/5.1/ref/settings/#databases

DATABASES = {
    'default': {
        'ENGINE': os.getenv("DB_ENGINE", 'django.db.backends.sqlite3'),
        'NAME': os.getenv("DB_NAME", str(BASE_DIR / 'db.sqlite3')),
        'USER': os.getenv("DB_USER", ""),
        'PASSWORD': os.getenv("DB_PASSWORD", ""),
        'HOST': os.getenv("DB_HOST", ""),
        'PORT': os.getenv("DB_PORT", ""),
    }
}


# Password validation
# https://docs.djangoproject.com/en/5.1/ref/settings/#auth-password-validators

AUTH_PASSWORD_VALIDATORS = [
    {
        'NAME': 'django.contrib.auth.password_validation.UserAttributeSimilarityValidator',
    },
    {
        'NAME': 'django.contrib.auth.password_validation.MinimumLengthValidator',
    },
    {
        'NAME': 'django.contrib.auth.password_validation.CommonPasswordValidator',
    },
    {
        'NAME': 'django.contrib.auth.password_validation.NumericPasswordValidator',
    },
]


# Internationalization
# https://docs.djangoproject.com/en/5.1/topics/i18n/

LANGUAGE_CODE = 'en-us'

TIME_ZONE = 'UTC'

USE_I18N = True

USE_TZ = True


# Static files (CSS, JavaScript, Images)
# https://docs.djangoproject.com/en/5.1/howto/static-files/

STATIC_URL = 'static/'

# Default primary key field type
# https://docs.djangoproject.com/en/5.1/ref/settings/#default-auto-field

DEFAULT_AUTO_FIELD = 'django.db.models.BigAutoField'

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

LOGGING = {
    "version": 1,
    "disable_existing_loggers": False,
    "formatters": {
        "standard": {
            "format": "%(asctime)s %(levelname)s %(name)s: %(message)s",
        },
    },
    "handlers": {
        "console": {
            "class": "logging.StreamHandler",
            "formatter": "standard",
        },
    },
    "root": {
        "handlers": ["console"],
        "level": LOG_LEVEL,
    },
    "loggers": {
        "apscheduler": {"level": "WARNING"},
        "urllib3": {"level": "WARNING"},
    },
}

# provider endpoints
HETZNER_API_URL = os.getenv("HETZNER_API_URL", "https://api.hetzner.cloud/v1")
HETZNER_DEFAULT_SERVER_TYPE = os.getenv("HETZNER_DEFAULT_SERVER_TYPE", "cx22")
HETZNER_DEFAULT_IMAGE = os.getenv("HETZNER_DEFAULT_IMAGE", "ubuntu-24.04")
PROVIDER_HTTP_TIMEOUT = int(os.getenv("PROVIDER_HTTP_TIMEOUT", 30))

# reconciler retry and delays
RECONCILER_MAX_ATTEMPTS = int(os.getenv("RECONCILER_MAX_ATTEMPTS", 6))
RECONCILER_BACKOFF_BASE = float(os.getenv("RECONCILER_BACKOFF_BASE", 5))
RECONCILER_BACKOFF_CAP = float(os.getenv("RECONCILER_BACKOFF_CAP", 600))
RECONCILER_BACKOFF_JITTER = float(os.getenv("RECONCILER_BACKOFF_JITTER", 0.25))
RECONCILER_POLL_INTERVAL = float(os.getenv("RECONCILER_POLL_INTERVAL", 10))
RECONCILER_LEASE_SECONDS = int(os.getenv("RECONCILER_LEASE_SECONDS", 300))
RECONCILER_BATCH_SIZE = int(os.getenv("RECONCILER_BATCH_SIZE", 10))
RECONCILER_MAX_WORKERS = int(os.getenv("RECONCILER_MAX_WORKERS", 6))
# run the dispatcher inside the web process (dev convenience); use `manage.py runreconciler` otherwise
RECONCILER_IN_APP = _env_bool("RECONCILER_IN_APP")

SERVER_BOOT_TIMEOUT = int(os.getenv("SERVER_BOOT_TIMEOUT", 600))
SITE_ROLLOUT_TIMEOUT = int(os.getenv("SITE_ROLLOUT_TIMEOUT", 900))
HEALTH_CHECK_INTERVAL = int(os.getenv("HEALTH_CHECK_INTERVAL", 300))
