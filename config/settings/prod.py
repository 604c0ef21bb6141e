# config/settings/prod.py
import os

from .base import *  # noqa

DEBUG = False
ALLOWED_HOSTS = [h for h in os.getenv("DJANGO_ALLOWED_HOSTS", "").split(",") if h]

LOGGING["loggers"]["hc_core"]["level"] = os.getenv("HC_LOG_LEVEL", "WARNING").upper()
