# src/trialrunner/__main__.py
from __future__ import annotations

import argparse

from trialrunner.cli.argparse_model import add_model_to_parser
from trialrunner.cli.controller import ControllerCommand, handle_controller


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(prog="trialrunner")
    sub = parser.add_subparsers(dest="command", required=True)

    controller_p = sub.add_parser("controller", help="Run the trial controller.")
    add_model_to_parser(controller_p, ControllerCommand)

    ns = parser.parse_args(argv)

    if ns.command == "controller":
        data = vars(ns)
        data.pop("command", None)
        cmd = ControllerCommand.model_validate(data)
        handle_controller(cmd)
        return

    raise RuntimeError(f"Unknown command: {ns.command}")


if __name__ == "__main__":
    main()
