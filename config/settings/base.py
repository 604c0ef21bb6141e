# config/settings/base.py
from pathlib import Path
import os
from dotenv import load_dotenv


BASE_DIR = Path(__file__).resolve().parent.parent.parent
load_dotenv(BASE_DIR / ".env")

SECRET_KEY = os.getenv("DJANGO_SECRET_KEY", "unsafe-dev-key")
DEBUG = os.getenv("DJANGO_DEBUG", "0") == "1"
ALLOWED_HOSTS = ["*"]

INSTALLED_APPS = [
    # Django
    "django.contrib.auth",
    "django.contrib.contenttypes",

    # Third-party
    "rest_framework",

    # Domain apps (modular monolith)
    "hc_core.common.apps.CommonConfig",
    "hc_core.providers.apps.ProvidersConfig",
    "hc_core.bundles.apps.BundlesConfig",
    "hc_core.recommendations.apps.RecommendationsConfig",
]

DATABASES = {
    "default": {
        "ENGINE": "django.db.backends.postgresql",
        "NAME": os.getenv("DB_NAME", "hc"),
        "USER": os.getenv("DB_USER", "hc"),
        "PASSWORD": os.getenv("DB_PASSWORD", "hc"),
        "HOST": os.getenv("DB_HOST", "127.0.0.1"),
        "PORT": os.getenv("DB_PORT", "5432"),
    }
}

LANGUAGE_CODE = "en-us"
TIME_ZONE = "America/Toronto"
USE_I18N = True
USE_TZ = True

DEFAULT_AUTO_FIELD = "django.db.models.BigAutoField"

LOGGING = {
    "version": 1,
    "disable_existing_loggers": False,
    "formatters": {
        "standard": {
            "format": "%(asctime)s %(levelname)s %(name)s %(message)s",
        },
    },
    "handlers": {
        "console": {
            "class": "logging.StreamHandler",
            "formatter": "standard",
        },
    },
    "loggers": {
        "hc_core": {
            "handlers": ["console"],
            "level": os.getenv("HC_LOG_LEVEL", "INFO").upper(),
            "propagate": False,
        },
    },
}

# -------------------------------------------------------------------
# Recommendation & matching engine
# -------------------------------------------------------------------
HC_RULE_MAX_DEPTH = int(os.getenv("HC_RULE_MAX_DEPTH", "32"))

# Any key omitted here falls back to ScoringWeights defaults.
HC_PROVIDER_SCORING_WEIGHTS = {
    "quality": 0.30,
    "acceptance": 0.20,
    "completion": 0.20,
    "capacity": 0.15,
    "rate": 0.10,
    "special_bonus_per_flag": 5.0,
    "special_bonus_cap": 10.0,
}

HC_HIGH_UTILIZATION_PCT = float(os.getenv("HC_HIGH_UTILIZATION_PCT", "80"))
HC_RATE_WARNING_PERCENTILE = int(os.getenv("HC_RATE_WARNING_PERCENTILE", "90"))
HC_INSURANCE_EXPIRY_WARNING_DAYS = int(os.getenv("HC_INSURANCE_EXPIRY_WARNING_DAYS", "30"))
