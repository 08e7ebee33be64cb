from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Any

import yaml


@dataclass(frozen=True)
class AccumulatorConfig:
    variant: str


@dataclass(frozen=True)
class StoreConfig:
    backend: str
    path: str


@dataclass(frozen=True)
class LoggingConfig:
    level: str
    json: bool


@dataclass(frozen=True)
class ReplayConfig:
    schema_path: str
    runs: int


@dataclass(frozen=True)
class AppConfig:
    accumulator: AccumulatorConfig
    store: StoreConfig
    logging: LoggingConfig
    replay: ReplayConfig


def load_config(path: str = "configs/default.yaml") -> AppConfig:
    config_path = _resolve_config_path(path)
    raw: dict[str, Any] = yaml.safe_load(config_path.read_text())
    sparse = raw["sparse"]
    store = sparse["store"]
    return AppConfig(
        accumulator=AccumulatorConfig(**sparse["accumulator"]),
        store=StoreConfig(
            backend=store["backend"],
            path=_resolve_output_path(store.get("path", ":memory:"), config_path),
        ),
        logging=LoggingConfig(**sparse.get("logging", {"level": "INFO", "json": True})),
        replay=ReplayConfig(
            schema_path=_resolve_data_path(sparse["replay"]["schema_path"], config_path),
            runs=sparse["replay"].get("runs", 100),
        ),
    )


def _resolve_config_path(path: str) -> Path:
    candidate = Path(path)
    if candidate.is_absolute() or candidate.exists():
        return candidate

    return _repo_root() / candidate


def _resolve_data_path(path: str, config_path: Path) -> str:
    candidate = Path(path)
    if candidate.is_absolute():
        return str(candidate)

    in_config_dir = (config_path.parent / candidate).resolve()
    if in_config_dir.exists():
        return str(in_config_dir)

    return str((_repo_root() / candidate).resolve())


def _resolve_output_path(path: str, config_path: Path) -> str:
    # The state file need not exist yet; anchor it next to the config file.
    if path == ":memory:" or Path(path).is_absolute():
        return path
    return str((config_path.parent / path).resolve())


def _repo_root() -> Path:
    return Path(__file__).resolve().parents[2]
