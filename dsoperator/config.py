"""Operator configuration: the job spec template used for data loading."""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import yaml

_DEFAULT_JOB_SPEC_YAML = """
backoffLimit: 4
completionMode: NonIndexed
completions: 1
parallelism: 1
template:
  spec:
    restartPolicy: Never
    containers:
    - image: ubuntu:20.04
      command: ["/bin/bash", "-c", "echo 'Container args: '$(echo $@)"]
      resources:
        requests:
          cpu: 100m
          memory: 100Mi
        limits:
          cpu: 500m
          memory: 500Mi
"""

_JOB_SPEC_KEY = "dataset_job_spec_yaml"


class ConfigError(Exception):
    """The configuration could not be read or decoded."""


@dataclass(frozen=True)
class Configuration:
    """Settings read from the configuration file."""

    dataset_job_spec_yaml: str = ""


_config: Configuration | None = None


def get_dataset_job_spec_yaml() -> str:
    """Return the configured job spec template, or the built-in default."""
    if _config is None or not _config.dataset_job_spec_yaml:
        return _DEFAULT_JOB_SPEC_YAML
    return _config.dataset_job_spec_yaml


def _env_name(key: str) -> str:
    return key.replace(".", "_").upper()


def _as_string(key: str, value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "1" if value else "0"
    if isinstance(value, (str, int, float)):
        return str(value)
    raise ConfigError(f"'{key}' expected a string, got {type(value).__name__}")


def _load(text: str, origin: str) -> None:
    global _config
    try:
        data = yaml.safe_load(text)
    except yaml.YAMLError as exc:
        raise ConfigError(f"cannot parse config {origin}: {exc}") from exc
    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise ConfigError(f"config {origin} must be a mapping at the top level")

    settings = {str(key).lower(): value for key, value in data.items()}
    for key in settings:
        env_value = os.environ.get(_env_name(key))
        if env_value:
            settings[key] = env_value

    try:
        spec = _as_string(_JOB_SPEC_KEY, settings.get(_JOB_SPEC_KEY))
    except ConfigError:
        _config = Configuration()
        raise
    _config = Configuration(dataset_job_spec_yaml=spec)


def parse_config_from_file(config_path: str | os.PathLike[str]) -> None:
    """Load the configuration from a YAML file; environment variables override known keys."""
    path = Path(config_path)
    try:
        text = path.read_text(encoding="utf-8")
    except OSError as exc:
        raise ConfigError(f"cannot read config {path}: {exc}") from exc
    _load(text, str(path))


def parse_config_from_file_content(content: str) -> None:
    """Load the configuration from YAML text."""
    _load(content, "<content>")