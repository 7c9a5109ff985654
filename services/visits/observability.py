"""
Logging and Sentry setup for the standalone entry points (cleanup job,
bootstrap script). Library code only ever does logging.getLogger(__name__).
"""

import logging
from typing import Any

import sentry_sdk

from services.visits.config import settings

# Snapshot fields that may carry user-authored content
SENSITIVE_EXTRA_KEYS = {"notes_html", "notesHtml"}


def _strip_sensitive_data(event: dict[str, Any], hint: dict[str, Any]) -> dict[str, Any] | None:
    """before_send hook: drop place notes from extras and breadcrumbs."""
    extra = event.get("extra", {})
    if isinstance(extra, dict):
        for key in list(extra.keys()):
            if key in SENSITIVE_EXTRA_KEYS:
                extra[key] = "[FILTERED]"
    if "breadcrumbs" in event:
        for breadcrumb in event["breadcrumbs"].get("values", []):
            data = breadcrumb.get("data", {})
            if isinstance(data, dict):
                for key in list(data.keys()):
                    if key in SENSITIVE_EXTRA_KEYS:
                        data[key] = "[FILTERED]"
    return event


def configure_logging(level: str | None = None) -> None:
    logging.basicConfig(
        level=getattr(logging, (level or settings.log_level).upper(), logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )


def setup_sentry() -> bool:
    """Initialise Sentry if a DSN is configured. Returns True when enabled."""
    if not settings.sentry_dsn:
        return False

    sentry_sdk.init(
        dsn=settings.sentry_dsn,
        environment=settings.environment,
        release=f"{settings.app_name}@{settings.app_version}",
        traces_sample_rate=settings.sentry_traces_sample_rate,
        before_send=_strip_sensitive_data,
        send_default_pii=False,
    )
    return True


def report_exception(exc: BaseException) -> None:
    """Forward to Sentry; a no-op when Sentry was never initialised."""
    sentry_sdk.capture_exception(exc)
