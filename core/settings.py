from environs import Env
from pathlib import Path

BASE_DIR = Path(__file__).resolve().parent.parent

env = Env()
env.read_env(BASE_DIR / '.env')

APP_ENV = env.str('APP_ENV', 'local')

SECRET_KEY = env.str('APP_SECRET_KEY', 'change-me')

DEBUG = APP_ENV != 'production'

ALLOWED_HOSTS = env.list('ALLOWED_HOSTS', default=['*'])

INSTALLED_APPS = [
    'django.contrib.admin',
    'django.contrib.auth',
    'django.contrib.contenttypes',
    'django.contrib.sessions',
    'django.contrib.messages',
    'django.contrib.staticfiles',
    'rest_framework',
    'milestonepay',
]

MIDDLEWARE = [
    'django.middleware.security.SecurityMiddleware',
    'django.contrib.sessions.middleware.SessionMiddleware',
    'django.middleware.common.CommonMiddleware',
    'django.middleware.csrf.CsrfViewMiddleware',
    'django.contrib.auth.middleware.AuthenticationMiddleware',
    'django.contrib.messages.middleware.MessageMiddleware',
    'django.middleware.clickjacking.XFrameOptionsMiddleware',
]

ROOT_URLCONF = 'core.urls'

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

WSGI_APPLICATION = 'core.wsgi.application'


DATABASE_ENGINE = env.str(
    'DATABASE_ENGINE',
    'django.db.backends.sqlite3' if APP_ENV == 'local'
    else 'django.db.backends.postgresql_psycopg2',
)

if DATABASE_ENGINE.endswith('sqlite3'):
    DATABASES = {
        'default': {
            'ENGINE': DATABASE_ENGINE,
            'NAME': env.str('SQLITE_PATH', str(BASE_DIR / 'milestonepay.sqlite3')),
        }
    }
else:
    DATABASES = {
        'default': {
            'ENGINE': DATABASE_ENGINE,
            'NAME': env.str(
                'PGSQL_DATABASE_MILESTONEPAY',
                env.str('PGSQL_DATABASE', 'milestonepay'),
            ),
            'USER': env.str('PGSQL_USER', 'postgres'),
            'PASSWORD': env.str('PGSQL_PASSWORD', 'mysecretpassword'),
            'HOST': env.str('PGSQL_HOST', 'localhost'),
            'PORT': env.int('PGSQL_PORT', 5432),
        }
    }


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


LANGUAGE_CODE = 'en-us'

TIME_ZONE = 'UTC'

USE_I18N = True

USE_TZ = True


STATIC_URL = '/static/'
STATIC_ROOT = BASE_DIR / 'static'

DEFAULT_AUTO_FIELD = 'django.db.models.BigAutoField'

REST_FRAMEWORK = {
    'DEFAULT_RENDERER_CLASSES': [
        'rest_framework.renderers.JSONRenderer',
    ],
}

EMAIL_BACKEND = env.str(
    'EMAIL_BACKEND',
    'django.core.mail.backends.console.EmailBackend' if APP_ENV == 'local'
    else 'django.core.mail.backends.smtp.EmailBackend',
)
EMAIL_HOST = env.str('EMAIL_HOST', 'localhost')
EMAIL_PORT = env.int('EMAIL_PORT', 587)
EMAIL_HOST_USER = env.str('EMAIL_HOST_USER', '')
EMAIL_HOST_PASSWORD = env.str('EMAIL_HOST_PASSWORD', '')
EMAIL_USE_TLS = env.bool('EMAIL_USE_TLS', True)
EMAIL_TIMEOUT = env.int('EMAIL_TIMEOUT', 10)

# Milestone payments
MILESTONEPAY_FROM_EMAIL = env.str(
    'MILESTONEPAY_FROM_EMAIL', 'payments@milestonepay.local')
MILESTONEPAY_SECURITY_ALERT_EMAILS = env.list(
    'MILESTONEPAY_SECURITY_ALERT_EMAILS', default=['security@milestonepay.local'])

MILESTONEPAY_TFA_THRESHOLD = env.decimal('MILESTONEPAY_TFA_THRESHOLD', 100)
MILESTONEPAY_OTP_TTL_MINUTES = env.int('MILESTONEPAY_OTP_TTL_MINUTES', 10)
MILESTONEPAY_OTP_MAX_FAILED_ATTEMPTS = env.int(
    'MILESTONEPAY_OTP_MAX_FAILED_ATTEMPTS', 3)
MILESTONEPAY_OTP_RATE_LIMIT = env.int('MILESTONEPAY_OTP_RATE_LIMIT', 5)
MILESTONEPAY_OTP_RATE_WINDOW_MINUTES = env.int(
    'MILESTONEPAY_OTP_RATE_WINDOW_MINUTES', 15)
MILESTONEPAY_TRUSTED_DEVICE_DAYS = env.int(
    'MILESTONEPAY_TRUSTED_DEVICE_DAYS', 30)

MILESTONEPAY_DISPUTE_WINDOW_HOURS = env.int(
    'MILESTONEPAY_DISPUTE_WINDOW_HOURS', 48)
MILESTONEPAY_AUTO_APPROVE_DAYS = env.int('MILESTONEPAY_AUTO_APPROVE_DAYS', 7)
MILESTONEPAY_PRE_CHARGE_NOTICE_HOURS = env.int(
    'MILESTONEPAY_PRE_CHARGE_NOTICE_HOURS', 24)
MILESTONEPAY_EXPIRY_WARNING_DAYS = env.int(
    'MILESTONEPAY_EXPIRY_WARNING_DAYS', 30)
MILESTONEPAY_USAGE_ALERT_RATIO = env.decimal(
    'MILESTONEPAY_USAGE_ALERT_RATIO', '0.8')
MILESTONEPAY_ALERT_RULES = env.json('MILESTONEPAY_ALERT_RULES', '{}')
MILESTONEPAY_AUTO_REMEDIATION = env.bool('MILESTONEPAY_AUTO_REMEDIATION', True)

MILESTONEPAY_AUDIT_RETENTION_YEARS = env.int(
    'MILESTONEPAY_AUDIT_RETENTION_YEARS', 7)
MILESTONEPAY_SECURITY_RETENTION_YEARS = env.int(
    'MILESTONEPAY_SECURITY_RETENTION_YEARS', 2)
MILESTONEPAY_AUDIT_PURGE = env.bool('MILESTONEPAY_AUDIT_PURGE', False)

# Payment rails: 'sandbox' routes every method to the in-memory rail.
MILESTONEPAY_RAIL_BACKEND = env.str(
    'MILESTONEPAY_RAIL_BACKEND', 'sandbox' if APP_ENV == 'local' else 'live')
MILESTONEPAY_PSP_BASE_URL = env.str('MILESTONEPAY_PSP_BASE_URL', '')
MILESTONEPAY_PSP_API_KEY = env.str('MILESTONEPAY_PSP_API_KEY', '')
MILESTONEPAY_PSP_TIMEOUT_SECONDS = env.float(
    'MILESTONEPAY_PSP_TIMEOUT_SECONDS', 15.0)
MILESTONEPAY_STABLECOIN_RPC_URL = env.str('MILESTONEPAY_STABLECOIN_RPC_URL', '')
MILESTONEPAY_STABLECOIN_SIGNER_PRIVATE_KEY = env.str(
    'MILESTONEPAY_STABLECOIN_SIGNER_PRIVATE_KEY', '')
MILESTONEPAY_STABLECOIN_TOKEN_CONTRACT = env.str(
    'MILESTONEPAY_STABLECOIN_TOKEN_CONTRACT',
    '0x833589fCD6eDb6E08f4c7C32D4f71b54bdA02913')
MILESTONEPAY_STABLECOIN_TREASURY_ADDRESS = env.str(
    'MILESTONEPAY_STABLECOIN_TREASURY_ADDRESS', '')
MILESTONEPAY_STABLECOIN_CHAIN_ID = env.int(
    'MILESTONEPAY_STABLECOIN_CHAIN_ID', 8453)
MILESTONEPAY_STABLECOIN_GAS_LIMIT = env.int(
    'MILESTONEPAY_STABLECOIN_GAS_LIMIT', 120000)
MILESTONEPAY_STABLECOIN_TX_TIMEOUT_SECONDS = env.int(
    'MILESTONEPAY_STABLECOIN_TX_TIMEOUT_SECONDS', 120)
