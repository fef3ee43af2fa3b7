from __future__ import annotations

import argparse
from typing import Literal, Optional

import pytest
from pydantic import BaseModel, Field

from trialrunner.cli.argparse_model import add_model_to_parser


class DemoModel(BaseModel):
    # required
    group: str = Field(description="Group name.")

    # optionals
    workers: Optional[int] = Field(None, description="Worker count.")
    namespaces: Optional[list[str]] = Field(None, description="Namespaces.")
    leader: bool = Field(True, description="Take part in leader election.")
    loglevel: Optional[Literal["INFO", "DEBUG"]] = Field(None, description="Log level.")


@pytest.fixture
def parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="x")
    add_model_to_parser(p, DemoModel)
    return p


def test_required_field_enforced(parser) -> None:
    with pytest.raises(SystemExit):
        parser.parse_args([])


def test_parses_scalars_lists_and_choices(parser) -> None:
    ns = parser.parse_args(["--group", "g1", "--workers", "3", "--namespaces", "a", "b", "--loglevel", "DEBUG"])
    assert ns.group == "g1"
    assert ns.workers == 3
    assert ns.namespaces == ["a", "b"]
    assert ns.loglevel == "DEBUG"

    cmd = DemoModel.model_validate(vars(ns))
    assert cmd.leader is True


def test_bool_flag_defaults_and_negation(parser) -> None:
    assert parser.parse_args(["--group", "g1"]).leader is True
    assert parser.parse_args(["--group", "g1", "--no-leader"]).leader is False
    assert parser.parse_args(["--group", "g1", "--leader"]).leader is True


def test_literal_choices_rejected(parser) -> None:
    with pytest.raises(SystemExit):
        parser.parse_args(["--group", "g1", "--loglevel", "WARN"])
