from __future__ import annotations

import argparse
import logging
import signal
from typing import Literal, Optional

from pydantic import BaseModel, Field

from trialrunner.cli.argparse_model import add_model_to_parser

logger = logging.getLogger(__name__)


class ControllerCommand(BaseModel):
    group: Optional[str] = Field(None, description="Metastore group the controller manages.")
    workers: Optional[int] = Field(None, description="Number of concurrent reconcile workers.")
    candidate_id: Optional[str] = Field(None, description="Leader election identity (defaults to hostname).")
    grace_s: Optional[int] = Field(None, description="Grace duration for shutdown.")
    config_file: Optional[str] = Field(None, description="Optional trialrunner config file (toml/yaml).")
    loglevel: Optional[
        Literal[
            "CRITICAL",
            "ERROR",
            "WARNING",
            "INFO",
            "DEBUG",
            "critical",
            "error",
            "warning",
            "info",
            "debug",
        ]
    ] = Field(None, description="Logging level override.")


def command_overrides(command: ControllerCommand) -> dict[str, object]:
    overrides: dict[str, object] = {}
    if command.loglevel is not None:
        overrides["logging"] = {"level": command.loglevel.upper()}
    if command.group is not None:
        overrides["zookeeper"] = {"default_group": command.group}
    if command.workers is not None:
        overrides["controller"] = {"max_concurrent_reconciles": command.workers}
    if command.grace_s is not None:
        overrides["grace_s"] = command.grace_s
    return overrides


def handle_controller(command: ControllerCommand) -> None:
    from trialrunner.config import get_settings
    from trialrunner.controller import make_manager
    from trialrunner.logsetup import configure_logging

    settings = get_settings(config_file=command.config_file, **command_overrides(command))
    configure_logging(settings.logging)

    with make_manager(settings, candidate_id=command.candidate_id) as manager:

        def handler(_signum: int, _frame: object) -> None:
            logger.info("Stop requested; shutting down controller.")
            manager.request_stop(timeout_s=float(settings.grace_s))

        signal.signal(signal.SIGTERM, handler)
        if hasattr(signal, "SIGINT"):
            signal.signal(signal.SIGINT, handler)

        manager.run_forever()


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(prog="trialrunner-controller")
    add_model_to_parser(parser, ControllerCommand)
    ns = parser.parse_args(argv)
    cmd = ControllerCommand.model_validate(vars(ns))
    handle_controller(cmd)
