"""Structured JSON logging for the Journeys session engine.

Emits all log events as structured JSON with base fields:
service, domain, timestamp, level, event.
"""

from __future__ import annotations

import json
import logging
import sys
import traceback
from datetime import datetime, timezone

from journeys.config import SERVICE_ID

DOMAIN = "story_session"

EVENT_TYPES = [
    "session_started",
    "session_resumed",
    "turn_started",
    "turn_completed",
    "turn_rejected",
    "turn_degraded",
    "story_completed",
    "question_answered",
    "question_rejected",
    "settings_applied",
    "advisory_raised",
    "narrative_degraded",
    "narrative_loop_detected",
    "clarification_failed",
    "retry_scheduled",
    "media_resolved",
    "media_task_failed",
    "media_update_orphaned",
    "clip_attempt_failed",
    "image_attempt_failed",
    "narration_started",
    "narration_failed",
    "narration_quota_fallback",
    "cache_backend_failed",
    "cache_evicted",
    "progress_saved",
    "storage_quota_exceeded",
    "progress_saved_compressed",
    "progress_saved_after_cleanup",
    "progress_save_failed",
    "progress_load_failed",
    "progress_migrated",
    "storage_cleanup",
    "storage_near_quota",
    "settings_load_failed",
    "settings_save_failed",
    "data_import_failed",
]


class StructuredJsonFormatter(logging.Formatter):

    _DEFAULT_RECORD_KEYS = frozenset(
        logging.LogRecord("", 0, "", 0, "", (), None).__dict__
    ) | {"message", "taskName"}

    def format(self, record: logging.LogRecord) -> str:
        log_entry = {
            "service": SERVICE_ID,
            "domain": DOMAIN,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname.lower(),
            "event": record.getMessage(),
            "logger": record.name,
        }

        for key in vars(record):
            if key not in self._DEFAULT_RECORD_KEYS:
                val = getattr(record, key)
                if isinstance(val, (str, int, float, bool, list, dict, type(None))):
                    log_entry[key] = val

        if record.exc_info and record.exc_info[1] is not None:
            log_entry["exception"] = "".join(
                traceback.format_exception(*record.exc_info)
            )

        return json.dumps(log_entry, default=str)


def setup_logging(level: int = logging.INFO) -> None:
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(StructuredJsonFormatter())

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(level)

    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
