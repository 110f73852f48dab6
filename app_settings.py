from __future__ import annotations

import json
import logging
import os
from typing import Dict

from models import FeedbackMode

logger = logging.getLogger(__name__)

SAMPLE_RATE = 16_000


def default_settings() -> Dict:
    http_base = os.getenv("RECITE_BACKEND_HTTP_BASE", "http://localhost:8000")
    return {
        "ws_url": os.getenv("RECITE_BACKEND_WS_URL", "ws://localhost:8000/ws"),
        "http_base": http_base.rstrip("/"),
        "feedback_mode": FeedbackMode.HIGHLIGHT.value,  # highlight | beep | spoken
        "sample_rate": SAMPLE_RATE,
        "db_path": os.getenv("RECITE_DB_PATH", "recite_store.db"),
        "log_level": os.getenv("RECITE_LOG_LEVEL", "INFO"),
        # seconds; applies to uploads and mistake sync
        "request_timeout": 30.0,
    }


def settings_path() -> str:
    return os.path.abspath(os.getenv("RECITE_SETTINGS", "settings.json"))


def load_settings(defaults: Dict, path: str) -> Dict:
    settings = dict(defaults)
    try:
        if os.path.exists(path):
            with open(path, "r", encoding="utf-8") as fh:
                data = json.load(fh)
                if isinstance(data, dict):
                    settings.update(data)
    except (OSError, ValueError) as e:
        logger.warning("Ignoring unreadable settings file %s: %s", path, e)
    try:
        settings["feedback_mode"] = FeedbackMode(settings.get("feedback_mode")).value
    except ValueError:
        settings["feedback_mode"] = FeedbackMode.HIGHLIGHT.value
    settings["http_base"] = str(settings.get("http_base", "")).rstrip("/")
    return settings


def upload_url(settings: Dict) -> str:
    return f"{settings['http_base']}/upload-training-audio/"


def sync_mistakes_url(settings: Dict) -> str:
    return f"{settings['http_base']}/sync-mistakes/"
