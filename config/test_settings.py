import os

os.environ.setdefault("DEBUG", "True")
os.environ.setdefault("SECRET_KEY", "test-secret-key")
os.environ.setdefault("JWT_SIGNING_KEY", "test-jwt-signing-key")

from .settings import *  # noqa: E402,F401,F403

DATABASES = {
    "default": {
        "ENGINE": "django.db.backends.sqlite3",
        "NAME": BASE_DIR / "test_db.sqlite3",  # noqa: F405
    }
}

CACHES = {
    "default": {
        "BACKEND": "django.core.cache.backends.locmem.LocMemCache",
        "LOCATION": "egura-tests",
    }
}

CELERY_TASK_ALWAYS_EAGER = True
CELERY_TASK_EAGER_PROPAGATES = True
CELERY_BROKER_URL = "memory://"
CELERY_RESULT_BACKEND = "cache+memory://"

PASSWORD_HASHERS = ["django.contrib.auth.hashers.MD5PasswordHasher"]

REST_FRAMEWORK = {
    **REST_FRAMEWORK,  # noqa: F405
    "DEFAULT_THROTTLE_CLASSES": [],
}

INTOUCH_PAY_USERNAME = "testmerchant"
INTOUCH_PAY_ACCOUNT_NO = "250220000001"
INTOUCH_PAY_PASSWORD = "partner-secret"
INTOUCH_PAY_API_URL = "https://gateway.test/api/requestpayment/"
INTOUCH_PAY_STATUS_URL = "https://gateway.test/api/gettransactionstatus/"
PAYMENT_CALLBACK_BASE_URL = "https://shop.test"

ADMIN_NOTIFICATION_PHONES = ["250788000111"]
PAYMENT_PENDING_EXPIRY_MINUTES = None
RESTOCK_ON_PAYMENT_FAILURE = False

LOGGING = {
    "version": 1,
    "disable_existing_loggers": False,
    "handlers": {"null": {"class": "logging.NullHandler"}},
    "root": {"handlers": ["null"], "level": "WARNING"},
}
