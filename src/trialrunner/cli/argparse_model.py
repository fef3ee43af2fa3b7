from __future__ import annotations

import argparse
from typing import Any, Literal, Type, Union, cast, get_args, get_origin

from pydantic import BaseModel


def _unwrap_optional(tp: Any) -> Any:
    if get_origin(tp) is Union:
        args = [a for a in get_args(tp) if a is not type(None)]
        if len(args) == 1:
            return args[0]
    return tp


def _argparse_type(tp: Any) -> type:
    # Anything richer than a scalar is passed through as str; pydantic validates it.
    if tp in (str, int, float):
        return cast(type, tp)
    return str


def add_model_to_parser(parser: argparse.ArgumentParser, model: Type[BaseModel]) -> None:
    """
    Add one `--flag` per field of a pydantic model. The parsed namespace is
    meant for `model.model_validate(vars(ns))`.
    """
    for name, field in model.model_fields.items():
        tp = _unwrap_optional(field.annotation if field.annotation is not None else Any)
        flag = f"--{name.replace('_', '-')}"
        required = field.is_required()
        default = None if required else field.default
        help_text = field.description or ""

        if tp is bool:
            parser.add_argument(
                flag,
                dest=name,
                action=argparse.BooleanOptionalAction,
                default=bool(default),
                help=help_text,
            )
        elif get_origin(tp) is Literal:
            parser.add_argument(
                flag, dest=name, choices=list(get_args(tp)), default=default, required=required, help=help_text
            )
        elif get_origin(tp) is list:
            args = get_args(tp)
            parser.add_argument(
                flag,
                dest=name,
                nargs="*",
                type=_argparse_type(args[0] if args else str),
                default=default,
                required=required,
                help=help_text,
            )
        else:
            parser.add_argument(
                flag, dest=name, type=_argparse_type(tp), default=default, required=required, help=help_text
            )
