"""Process-wide tunables for reads and ingestion."""
from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import yaml

DEFAULT_FETCH_CHUNK_ROWS = 10_000
DEFAULT_RETRY_BACKOFF = 1.5
DEFAULT_PARALLELISM_CAP = 32


@dataclass(slots=True)
class ConnectorDefaults:
    fetch_chunk_rows: int
    retry_backoff_sec: float
    max_parallelism: int


def _load_yaml_config() -> dict[str, Any]:
    """Load the first YAML configuration file found, if any."""

    config_env = os.environ.get("KINETICA_SPARK_CONFIG")
    candidate_paths: list[Path] = []
    if config_env:
        candidate_paths.append(Path(config_env).expanduser())
    candidate_paths.append(Path.home() / ".config" / "kinetica_spark" / "config.yaml")

    for path in candidate_paths:
        if not path.is_file():
            continue
        with path.open("r", encoding="utf-8") as handle:
            data = yaml.safe_load(handle)
        if isinstance(data, dict):
            return data
    return {}


def _extract_section(raw: dict[str, Any]) -> dict[str, Any]:
    candidates = [
        raw.get("kinetica_spark", {}),
        raw.get("kinetica", {}).get("spark", {}),
    ]
    for candidate in candidates:
        if isinstance(candidate, dict) and candidate:
            return candidate
    return {}


def _env_override(key: str) -> str | None:
    return os.environ.get(f"KINETICA_SPARK_{key.upper()}")


def load_config() -> ConnectorDefaults:
    """Load defaults from env variables or YAML."""

    yaml_config = _extract_section(_load_yaml_config())

    def resolve_int(key: str, default: int) -> int:
        env_value = _env_override(key)
        if env_value is not None:
            try:
                return int(env_value)
            except ValueError:  # pragma: no cover - invalid env
                pass
        value = yaml_config.get(key, default)
        if isinstance(value, int):
            return value
        try:
            return int(value)
        except (TypeError, ValueError):  # pragma: no cover - invalid YAML value
            return default

    def resolve_float(key: str, default: float) -> float:
        env_value = _env_override(key)
        if env_value is not None:
            try:
                return float(env_value)
            except ValueError:  # pragma: no cover - invalid env
                pass
        value = yaml_config.get(key, default)
        try:
            return float(value)
        except (TypeError, ValueError):  # pragma: no cover - invalid YAML value
            return default

    fetch_chunk_rows = max(1, resolve_int("fetch_chunk_rows", DEFAULT_FETCH_CHUNK_ROWS))
    retry_backoff = max(0.0, resolve_float("retry_backoff_sec", DEFAULT_RETRY_BACKOFF))

    cpu_count = os.cpu_count() or 1
    max_parallelism = resolve_int("max_parallelism", min(cpu_count, DEFAULT_PARALLELISM_CAP))
    max_parallelism = max(1, min(max_parallelism, DEFAULT_PARALLELISM_CAP))

    return ConnectorDefaults(
        fetch_chunk_rows=fetch_chunk_rows,
        retry_backoff_sec=retry_backoff,
        max_parallelism=max_parallelism,
    )
