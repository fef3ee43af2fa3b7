from __future__ import annotations

import logging

from trialrunner.config import LoggingSettings

_CONFIGURED = False


def configure_logging(settings: LoggingSettings, *, force: bool = False) -> None:
    """
    Install the root handler once per process. Library modules only ever call
    `logging.getLogger(__name__)`; the entrypoint decides level and format.
    """
    global _CONFIGURED
    if _CONFIGURED and not force:
        return

    logging.basicConfig(level=settings.level, format=settings.format, force=True)

    # kazoo logs every connection state change at INFO; keep it out of the way.
    logging.getLogger("kazoo.client").setLevel(max(logging.WARNING, logging.getLevelName(settings.level)))
    _CONFIGURED = True
