import os, os.path, json

def local(fn):
	return os.path.join(os.path.dirname(os.path.dirname(os.path.abspath(__file__))), 'local', fn)

# Deployments put their settings in local/environment.json. Without one
# we run with development defaults.
environment = { }
if os.path.exists(local("environment.json")):
	with open(local("environment.json")) as f:
		environment = json.load(f)

SECRET_KEY = environment.get("secret-key", "development-only-secret-key")
DEBUG = environment.get("debug", True)

ALLOWED_HOSTS = [environment["host"]] if environment.get("host") else ["localhost", "127.0.0.1", "testserver"]

# Applications & middleware

INSTALLED_APPS = [
	'django.contrib.admin',
	'django.contrib.auth',
	'django.contrib.contenttypes',
	'django.contrib.sessions',
	'django.contrib.messages',
	'django.contrib.staticfiles',

	'powerback',
	'escrow',
]

MIDDLEWARE = [
	'django.contrib.sessions.middleware.SessionMiddleware',
	'django.middleware.common.CommonMiddleware',
	'django.middleware.csrf.CsrfViewMiddleware',
	'django.contrib.auth.middleware.AuthenticationMiddleware',
	'django.contrib.messages.middleware.MessageMiddleware',
	'django.middleware.clickjacking.XFrameOptionsMiddleware',
]

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

# Database

DATABASES = {
	'default': {
		'ENGINE': 'django.db.backends.sqlite3',
		'NAME': local('db.sqlite3'),
	}
}
if environment.get('db'):
	DATABASES['default'].update(environment['db'])
	CONN_MAX_AGE = 60

DEFAULT_AUTO_FIELD = 'django.db.models.AutoField'

# Settings

ROOT_URLCONF = 'powerback.urls'
WSGI_APPLICATION = 'powerback.wsgi.application'

LANGUAGE_CODE = 'en-us'
# Limits reset on local calendar dates. Congress is in Washington.
TIME_ZONE = 'America/New_York'
USE_I18N = True
USE_TZ = True

EMAIL_BACKEND = 'django.core.mail.backends.console.EmailBackend'
if environment.get("email"):
	EMAIL_BACKEND = 'django.core.mail.backends.smtp.EmailBackend'
	EMAIL_HOST = environment["email"]["host"]
	EMAIL_PORT = environment["email"]["port"]
	EMAIL_HOST_USER = environment["email"]["user"]
	EMAIL_HOST_PASSWORD = environment["email"]["pw"]
	EMAIL_USE_TLS = True

if environment.get("https"):
	SESSION_COOKIE_HTTPONLY = True
	SESSION_COOKIE_SECURE = True
	CSRF_COOKIE_SECURE = True

STATIC_URL = '/static/'
STATIC_ROOT = environment.get("static", None)

# Logging. Errors are mailed to ADMINS when DEBUG is off.

ADMINS = environment.get("admins", [])
SERVER_EMAIL = DEFAULT_FROM_EMAIL = environment.get("from-email", "POWERBACK <hello@powerback.us>")

LOGGING = {
	'version': 1,
	'disable_existing_loggers': False,
	'filters': {
		'require_debug_false': { '()': 'django.utils.log.RequireDebugFalse' },
	},
	'formatters': {
		'simple': { 'format': '%(asctime)s %(levelname)s %(name)s: %(message)s' },
	},
	'handlers': {
		'console': { 'class': 'logging.StreamHandler', 'formatter': 'simple' },
		'mail_admins': {
			'level': 'ERROR',
			'filters': ['require_debug_false'],
			'class': 'django.utils.log.AdminEmailHandler',
		},
	},
	'loggers': {
		'escrow': {
			'handlers': ['console', 'mail_admins'],
			'level': environment.get("log-level", "INFO"),
		},
		'powerback': {
			'handlers': ['console', 'mail_admins'],
			'level': environment.get("log-level", "INFO"),
		},
	},
}

# Escrow

# Donation limits in dollars. Guests (donors who haven't given us full
# FEC identifying information) have a small yearly cap across all
# candidates. Compliant donors have the FEC's per-candidate, per-election
# limit; the primary and the general are separate elections. Tips to our
# PAC have their own yearly limit.
ESCROW_LIMITS = environment.get("limits", {
	"guest": { "per_donation": 50, "annual": 50 },
	"compliant": { "per_donation": 3500, "per_election": 3500 },
	"pac": { "annual": 5000 },
})

# The processor's fee, passed on to the donor.
ESCROW_FEES = { "percent": "0.029", "fixed": "0.30" }

MINIMUM_DONATION = 1 # dollars

# How many celebrations the trigger resolves at once, and how many times
# it re-reads a celebration that changed underneath it.
ESCROW_RESOLUTION_WORKERS = environment.get("resolution-workers", 4)
ESCROW_STALE_RETRIES = 3

# The payment processor. None uses a stand-in for testing.
PAYMENTS_API = environment.get("payments")
PAYMENTS_WEBHOOK_SECRET = environment.get("payments-webhook-secret", "")

CONGRESS_API_KEY = environment.get("congress-api-key", "DEMO_KEY")
FEC_API_KEY = environment.get("fec-api-key", "DEMO_KEY")
