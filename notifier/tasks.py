from __future__ import annotations

import logging
from typing import Optional

from celery import shared_task

from .config import load_settings
from .runtime import NotifierRuntime

LOGGER = logging.getLogger(__name__)


def build_runtime() -> NotifierRuntime:
    return NotifierRuntime(load_settings())


@shared_task(name="notifier.tasks.run_poll_cycle")
def run_poll_cycle(token: Optional[str] = None) -> str:
    """One headless fetch cycle; new events go to the shared log unalerted."""
    runtime = build_runtime()
    try:
        delta = runtime.poller.run_once(token, alert=False)
        for event in delta:
            LOGGER.info("New notification %s: %s", event.id, event.derived_title)
        LOGGER.info("Poll cycle recorded %d notification(s)", len(delta))
        return str(len(delta))
    finally:
        runtime.shutdown()
