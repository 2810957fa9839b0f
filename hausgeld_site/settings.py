import os
from pathlib import Path

BASE_DIR = Path(__file__).resolve().parent.parent

SECRET_KEY = os.environ.get("DJANGO_SECRET_KEY", "hausgeld-dev-secret-key")
DEBUG = os.environ.get("DJANGO_DEBUG", "1") == "1"
ALLOWED_HOSTS = [host for host in os.environ.get("DJANGO_ALLOWED_HOSTS", "").split(",") if host]

INSTALLED_APPS = [
    "django.contrib.contenttypes",
    "django.contrib.auth",
    "simple_history",
    "hausgeld",
]

DATABASES = {
    "default": {
        "ENGINE": "django.db.backends.sqlite3",
        "NAME": os.environ.get("DJANGO_DB_PATH", BASE_DIR / "db.sqlite3"),
    }
}

LANGUAGE_CODE = "de-de"
TIME_ZONE = "Europe/Vienna"
USE_I18N = True
USE_TZ = True

DEFAULT_AUTO_FIELD = "django.db.models.BigAutoField"

LOGGING = {
    "version": 1,
    "disable_existing_loggers": False,
    "formatters": {
        "simple": {"format": "%(asctime)s %(levelname)s %(name)s: %(message)s"},
    },
    "handlers": {
        "console": {"class": "logging.StreamHandler", "formatter": "simple"},
    },
    "loggers": {
        "hausgeld": {
            "handlers": ["console"],
            "level": os.environ.get("HGA_LOG_LEVEL", "INFO"),
        },
    },
}

# Hausgeldabrechnung; Schlüssel wie in HgaConfig (Groß-/Kleinschreibung egal).
HGA = {
    "TAX_RATE": "0.20",
    "TAX_CAP": "1200.00",
    "MIN_YEAR": 2000,
    "PERCENTAGE_TOLERANCE": "10",
    "TAX_RATIO_THRESHOLD": "25",
    "HEATING_COST_THRESHOLD": "5000.00",
    "PAYMENT_COUNT_MIN": 10,
    "PAYMENT_COUNT_MAX": 16,
    "AI_TIMEOUT": float(os.environ.get("HGA_AI_TIMEOUT", "60")),
    "FEEDBACK_LIMIT": 10,
    "OLLAMA_URL": os.environ.get("OLLAMA_URL", "http://localhost:11434"),
    "OLLAMA_MODEL": os.environ.get("OLLAMA_MODEL", "llama3.1:8b"),
    "CLAUDE_API_KEY": os.environ.get("ANTHROPIC_API_KEY", ""),
    "CLAUDE_MODEL": os.environ.get("CLAUDE_MODEL", "claude-3-haiku-20240307"),
    "CLAUDE_ENABLED": os.environ.get("AI_CLAUDE_ENABLED", "0") == "1",
}
