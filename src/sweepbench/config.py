# Copyright (c) Syntropy Systems
"""Configuration management for sweepbench."""
from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import cast

import yaml
from pydantic import TypeAdapter, ValidationError

from sweepbench.models.base import JSONValue
from sweepbench.models.sweep import ParameterSpec

DEFAULT_CONFIG_NAME = "bench.yaml"

_SPECS_ADAPTER = TypeAdapter(list[ParameterSpec])


class ConfigError(ValueError):
    """Invalid benchmark configuration or parameter specification."""


@dataclass
class BenchConfig:
    """Configuration for a benchmark sweep."""

    server_script: str
    prompt: str
    parameters: list[ParameterSpec]
    python: str = "python"
    prompt_parameters: dict[str, JSONValue] = field(default_factory=dict)
    default_parameters: list[list[str]] = field(default_factory=list)

    # Output locations, relative to the working directory
    logs_dir: Path = Path("logs")
    results_dir: Path = Path("results")

    # Seconds between SIGTERM and SIGKILL once a result is in
    kill_grace_period: float = 5.0

    # Seconds to wait for a late marker after the prompt request fails
    prompt_failure_grace: float = 5.0

    # Generation request timeout in seconds (None waits forever)
    request_timeout: float | None = None

    @classmethod
    def from_yaml(cls, path: Path) -> BenchConfig:
        """Load benchmark configuration from a YAML file."""
        try:
            with path.open() as f:
                data = yaml.safe_load(f)
        except yaml.YAMLError as e:
            msg = f"Invalid YAML in {path}: {e}"
            raise ConfigError(msg) from e

        if not isinstance(data, dict):
            msg = f"Config file {path} must contain a mapping"
            raise ConfigError(msg)

        return cls.from_dict(cast("dict[str, object]", data))

    @classmethod
    def from_dict(cls, data: dict[str, object]) -> BenchConfig:
        """Build a configuration from already parsed data."""
        for required in ("server_script", "prompt", "parameters"):
            if required not in data:
                msg = f"Config must have '{required}' field"
                raise ConfigError(msg)

        try:
            parameters = _SPECS_ADAPTER.validate_python(data["parameters"])
        except ValidationError as e:
            msg = f"Invalid 'parameters': {e}"
            raise ConfigError(msg) from e

        prompt_parameters = data.get("prompt_parameters") or {}
        if not isinstance(prompt_parameters, dict):
            msg = "'prompt_parameters' must be a mapping"
            raise ConfigError(msg)

        config = cls(
            server_script=str(data["server_script"]),
            prompt=str(data["prompt"]),
            parameters=parameters,
            python=str(data.get("python", "python")),
            prompt_parameters=cast("dict[str, JSONValue]", prompt_parameters),
            default_parameters=_parse_default_parameters(
                data.get("default_parameters") or []
            ),
        )

        for key in ("logs_dir", "results_dir"):
            if data.get(key) is not None:
                setattr(config, key, _parse_path(key, data[key]))
        for key in ("kill_grace_period", "prompt_failure_grace", "request_timeout"):
            if data.get(key) is not None:
                setattr(config, key, _parse_seconds(key, data[key]))

        return config

    @property
    def command_line(self) -> str:
        """Server script plus default arguments, as shown in reports."""
        flat = [arg for group in self.default_parameters for arg in group]
        return " ".join([self.server_script, *flat])


def _parse_path(key: str, raw: object) -> Path:
    if not isinstance(raw, str):
        msg = f"'{key}' must be a path, got {raw!r}"
        raise ConfigError(msg)
    return Path(raw)


def _parse_seconds(key: str, raw: object) -> float:
    """Validate a duration in seconds."""
    if isinstance(raw, bool) or not isinstance(raw, (int, float)):
        msg = f"'{key}' must be a number of seconds, got {raw!r}"
        raise ConfigError(msg)
    if raw < 0:
        msg = f"'{key}' must not be negative, got {raw}"
        raise ConfigError(msg)
    return float(raw)


def _parse_default_parameters(raw: object) -> list[list[str]]:
    """Normalize argument groups; a bare string is a one-element group."""
    if not isinstance(raw, list):
        msg = "'default_parameters' must be a list of argument groups"
        raise ConfigError(msg)

    groups: list[list[str]] = []
    for group in cast("list[object]", raw):
        if isinstance(group, list):
            groups.append([str(arg) for arg in cast("list[object]", group)])
        elif isinstance(group, (str, int, float)):
            groups.append([str(group)])
        else:
            msg = f"Invalid argument group in 'default_parameters': {group!r}"
            raise ConfigError(msg)
    return groups


def default_config() -> dict[str, object]:
    """Starter configuration written by ``sweepbench init``."""
    return {
        "python": "python",
        "server_script": "../koboldcpp/koboldcpp.py",
        "prompt": (
            "Below is an instruction that describes a task. Write a response "
            "that appropriately completes the request.\n\n"
            "### Instruction:\nWrite a short story about a lighthouse keeper.\n\n"
            "### Response:\n"
        ),
        "prompt_parameters": {
            "max_context_length": 2048,
            "max_length": 100,
            "rep_pen": 1.19,
            "rep_pen_range": 1024,
            "rep_pen_slope": 0.9,
            "temperature": 0.79,
            "tfs": 0.95,
            "top_a": 0,
            "top_k": 0,
            "top_p": 0.9,
            "typical": 1,
            "sampler_order": [6, 0, 1, 3, 4, 2, 5],
            "singleline": False,
            "stop_sequence": ["\nYou:", "\n### Instruction:", "\n### Response:"],
            "sampler_seed": 1337,
        },
        "default_parameters": [
            ["models/model.gguf"],
            ["--blasbatchsize", "512"],
            ["--threads", "4"],
            ["--blasthreads", "4"],
            ["--highpriority"],
            ["--contextsize", "2048"],
        ],
        "parameters": [
            {"name": "gpulayers", "from": 0, "to": 45, "step": 1},
        ],
        "logs_dir": "logs",
        "results_dir": "results",
        "kill_grace_period": 5,
        "prompt_failure_grace": 5,
        "request_timeout": None,
    }
