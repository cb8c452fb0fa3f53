# Copyright (c) Syntropy Systems
"""Parameter expansion and per-run command construction."""
from __future__ import annotations

import itertools
import json
import logging
from typing import TYPE_CHECKING

from sweepbench.config import ConfigError

if TYPE_CHECKING:
    from collections.abc import Iterable, Sequence

    from sweepbench.models.base import JSONValue, ParameterSet
    from sweepbench.models.sweep import ParameterSpec

logger = logging.getLogger(__name__)

# Decimal places kept for range values, to hide floating point drift
RANGE_PRECISION = 3

# Flag that disables output buffering in the child interpreter
UNBUFFERED_FLAG = "-u"

Invocation = tuple[tuple[str, ...], ...]


def materialize_values(spec: ParameterSpec) -> list[JSONValue]:
    """Return the ordered values a single spec contributes.

    Ranges include ``to`` and every value is rounded to three decimals.
    Whole numbers come out as ints, so ``0..1 step 0.5`` gives ``0, 0.5, 1``.
    """
    if spec.values is not None:
        if spec.is_range:
            msg = f"Parameter '{spec.name}' must have 'values' or 'from'/'to', not both"
            raise ConfigError(msg)
        return list(spec.values)

    if spec.start is None or spec.to is None:
        msg = f"Parameter '{spec.name}' must have 'values' or both 'from' and 'to'"
        raise ConfigError(msg)
    if spec.step <= 0:
        msg = f"Parameter '{spec.name}' has non-positive step {spec.step}"
        raise ConfigError(msg)
    if spec.to < spec.start:
        msg = (
            f"Parameter '{spec.name}' has an empty range "
            f"(from {spec.start} to {spec.to})"
        )
        raise ConfigError(msg)

    integral = all(
        isinstance(v, int) and not isinstance(v, bool)
        for v in (spec.start, spec.to, spec.step)
    )

    values: list[JSONValue] = []
    index = 0
    while True:
        # Index based stepping so error does not accumulate across the range
        current = spec.start + index * spec.step
        if integral:
            if current > spec.to:
                break
            values.append(int(current))
        else:
            rounded = round(current, RANGE_PRECISION)
            if rounded > spec.to:
                break
            values.append(int(rounded) if rounded.is_integer() else rounded)
        index += 1
    return values


def expand_parameters(specs: Iterable[ParameterSpec]) -> dict[str, list[JSONValue]]:
    """Materialize every spec, merging specs that share a name."""
    params: dict[str, list[JSONValue]] = {}
    for spec in specs:
        params.setdefault(spec.name, []).extend(materialize_values(spec))
    return params


def combination_key(combination: ParameterSet) -> str:
    """Order independent identity of a combination.

    Numbers compare by value, so ``1`` and ``1.0`` are the same.
    """
    normalized = {
        name: int(value) if isinstance(value, float) and value.is_integer() else value
        for name, value in combination.items()
    }
    return json.dumps(normalized, sort_keys=True)


def generate_combinations(specs: Iterable[ParameterSpec]) -> list[ParameterSet]:
    """Cartesian product of all parameter values, without duplicates.

    Two combinations are duplicates when they map the same names to the
    same values. The first occurrence keeps its position.
    """
    params = expand_parameters(specs)
    if not params:
        return []

    names = list(params)
    seen: set[str] = set()
    combinations: list[ParameterSet] = []
    total = 0

    for combo in itertools.product(*params.values()):
        total += 1
        combination: ParameterSet = dict(zip(names, combo))
        key = combination_key(combination)
        if key in seen:
            continue
        seen.add(key)
        combinations.append(combination)

    if total != len(combinations):
        logger.info(
            "Dropped %d duplicate combination(s)", total - len(combinations)
        )
    return combinations


def format_value(value: JSONValue) -> str:
    """Render a parameter value as a command line token."""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    if isinstance(value, (list, dict)):
        return json.dumps(value)
    return str(value)


def build_invocation(
    default_arguments: Sequence[Sequence[str]],
    combination: ParameterSet,
) -> Invocation:
    """Default argument groups followed by one ``--name value`` group per entry."""
    groups = [tuple(str(arg) for arg in group) for group in default_arguments]
    for name, value in combination.items():
        groups.append((f"--{name}", format_value(value)))
    return tuple(groups)


def build_command(python: str, server_script: str, invocation: Invocation) -> list[str]:
    """Full argv for one run."""
    command = [python, UNBUFFERED_FLAG, server_script]
    for group in invocation:
        command.extend(group)
    return command
