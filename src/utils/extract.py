"""Dotted-path value extraction from arbitrary JSON documents."""

from __future__ import annotations

import math
from decimal import Decimal, InvalidOperation
from typing import Any, Optional, Union

from src.oracle.errors import NotNumeric, PathNotFound, WrongType

Number = Union[int, float, Decimal]


def extract(document: Any, path: str) -> Number:
    """
    Walk ``document`` along a ``.``-separated key path and return a numeric leaf.

    Numbers are returned exactly as found. Numeric strings are parsed into
    ``Decimal`` so no precision is lost before fixed-point conversion.

    Raises:
        PathNotFound: a segment is missing, hits ``null``, a scalar or a bad list index
        NotNumeric: the leaf is a string that is not a finite decimal
        WrongType: the leaf is neither a number nor a string
    """
    if not path:
        raise PathNotFound("Data path must be a non-empty string", path)

    keys = path.split(".")
    value = document
    for step, key in enumerate(keys, start=1):
        if value is None:
            raise PathNotFound(
                f"Path not found at step {step}: '{key}' in path '{path}' - value is null", path
            )
        if isinstance(value, list):
            index = _list_index(key, len(value))
            if index is None:
                raise PathNotFound(
                    f"Path not found at step {step}: '{key}' in path '{path}' - "
                    f"not an index of a list of length {len(value)}",
                    path,
                )
            value = value[index]
            continue
        if not isinstance(value, dict):
            raise PathNotFound(
                f"Path not found at step {step}: '{key}' in path '{path}' - "
                f"cannot access property of {type(value).__name__}",
                path,
            )
        if key not in value:
            raise PathNotFound(f"Path not found at step {step}: '{key}' in path '{path}'", path)
        value = value[key]

    if value is None:
        raise PathNotFound(f"Path '{path}' exists but value is null", path)

    return _coerce_number(value, path)


def _list_index(key: str, length: int) -> Optional[int]:
    # canonical non-negative integers only, so "01" and "-1" do not resolve
    if not (key.isascii() and key.isdigit()) or str(int(key)) != key:
        return None
    index = int(key)
    return index if index < length else None


def _coerce_number(value: Any, path: str) -> Number:
    # bool is an int subclass but never a price
    if isinstance(value, bool):
        raise WrongType(f"Value at path '{path}' is not a number or numeric string (found: bool)", path)

    if isinstance(value, (int, Decimal)):
        return value

    if isinstance(value, float):
        if not math.isfinite(value):
            raise NotNumeric(f"Value at path '{path}' is not a finite number: {value}", path)
        return value

    if isinstance(value, str):
        text = value.strip()
        # Decimal accepts digit grouping like "1_000"
        if "_" in text:
            raise NotNumeric(f"Value at path '{path}' is not a valid number: '{value}'", path)
        try:
            parsed = Decimal(text)
        except InvalidOperation:
            raise NotNumeric(f"Value at path '{path}' is not a valid number: '{value}'", path)
        if not parsed.is_finite():
            raise NotNumeric(f"Value at path '{path}' is not a finite number: '{value}'", path)
        return parsed

    raise WrongType(
        f"Value at path '{path}' is not a number or numeric string (found: {type(value).__name__})",
        path,
    )
