"""Build ``Settings`` from defaults, a YAML file and environment overrides."""
from __future__ import annotations

import os
from dataclasses import fields, is_dataclass
from pathlib import Path
from typing import Any

import yaml

from ..config import Settings
from .logger import logger


# (section, key, variable, type); the environment wins over the file
ENV_OVERRIDES = [
    ("thresholds", "minimum", "MIN_CONFIDENCE", float),
    ("risk_controls", "max_daily_trades", "MAX_DAILY_TRADES", int),
    ("risk_controls", "max_daily_loss", "MAX_DAILY_LOSS", float),
    ("risk_controls", "cooldown_minutes", "TRADE_COOLDOWN_MINUTES", float),
    ("sizing", "max_order_value", "MAX_ORDER_VALUE", float),
    ("broker", "backend", "BROKER_BACKEND", str),
]


def load_settings(path: str | Path | None = None) -> Settings:
    settings = Settings()
    if path is not None:
        data = _read_yaml(Path(path))
        _apply_env(data)
        update_dataclass(settings, data)
    settings.validate()
    return settings


def _read_yaml(cfg_path: Path) -> dict[str, Any]:
    if not cfg_path.exists():
        raise FileNotFoundError(f"config file not found: {cfg_path}")
    with cfg_path.open("r", encoding="utf-8") as fh:
        data = yaml.safe_load(fh) or {}
    if not isinstance(data, dict):
        raise ValueError(f"config file {cfg_path} must contain a mapping at the top level")
    return data


def _apply_env(data: dict[str, Any]) -> None:
    for section, key, env_name, caster in ENV_OVERRIDES:
        raw_value = os.environ.get(env_name)
        if raw_value is None:
            continue
        try:
            value = caster(raw_value)
        except ValueError as exc:
            raise ValueError(f"{env_name} value '{raw_value}' is invalid") from exc
        data.setdefault(section, {})[key] = value


def update_dataclass(instance: Any, values: dict[str, Any], prefix: str = "") -> None:
    """Recursively overlay ``values`` onto a settings dataclass.

    Unknown keys are logged and skipped. Scalars are coerced to the type of
    the current value so ``"0.6"`` or ``3`` land as floats where a float is
    expected; booleans and lists are taken as given.
    """
    known = {f.name for f in fields(instance)}
    for key, value in values.items():
        dotted = f"{prefix}{key}"
        if key not in known:
            logger.warning(f"Ignoring unknown config key '{dotted}'")
            continue
        current = getattr(instance, key)
        if is_dataclass(current):
            if not isinstance(value, dict):
                raise ValueError(f"config section '{dotted}' must be a mapping")
            update_dataclass(current, value, prefix=f"{dotted}.")
        elif isinstance(current, (int, float)) and not isinstance(current, bool) and value is not None:
            try:
                setattr(instance, key, type(current)(value))
            except (TypeError, ValueError) as exc:
                raise ValueError(f"config key '{dotted}' expects {type(current).__name__}, got {value!r}") from exc
        else:
            setattr(instance, key, value)
