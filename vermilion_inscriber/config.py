"""Shared configuration loader for the inscriber."""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Mapping
from urllib.parse import urlparse

import yaml


class ConfigurationError(RuntimeError):
    """Raised when configuration is invalid."""


DEFAULT_CONFIG_PATH = Path.home() / ".vermilion.yaml"
_CONFIG_PATH_OVERRIDE: Path | None = None

DEFAULT_NETWORK = "testnet4"
DEFAULT_TIMEOUT_SECONDS = 30.0
DEFAULT_FEE_TIER = "fastestFee"
FEE_TIERS = ("fastestFee", "halfHourFee", "hourFee", "economyFee", "minimumFee")


@dataclass(frozen=True)
class ProviderConfig:
    """Connection details for the block-chain data provider."""

    network: str = DEFAULT_NETWORK
    endpoint: str | None = None
    timeout: float = DEFAULT_TIMEOUT_SECONDS
    min_fee_rate_satvb: float | None = None
    fee_tier: str = DEFAULT_FEE_TIER


def set_default_config_path(path: str | Path | None) -> None:
    """Remember a user-supplied config path for future loads."""

    global _CONFIG_PATH_OVERRIDE
    _CONFIG_PATH_OVERRIDE = Path(path).expanduser() if path else None


def _load_config_file(path: Path, *, required: bool) -> dict[str, Any]:
    if not path.exists():
        if required:
            raise ConfigurationError(f"Config file not found: {path}")
        return {}

    try:
        loaded = yaml.safe_load(path.read_text()) or {}
    except yaml.YAMLError as exc:  # pragma: no cover - delegated to PyYAML
        raise ConfigurationError(f"Invalid YAML in config file {path}: {exc}") from exc

    if not isinstance(loaded, dict):
        raise ConfigurationError(f"Expected {path} to contain a YAML object with a 'provider' section")
    return loaded


def _coerce_float(raw: Any, *, source: str) -> float | None:
    if raw is None:
        return None
    try:
        return float(raw)
    except (TypeError, ValueError) as exc:
        raise ConfigurationError(f"Invalid number in {source}: {raw}") from exc


def _first_value(*values: Any, default: Any = None) -> Any:
    for value in values:
        if value is not None:
            return value
    return default


def _validate_endpoint(raw: str | None) -> str | None:
    if not raw:
        return None
    parsed = urlparse(raw)
    if parsed.scheme not in {"http", "https"} or not parsed.hostname:
        raise ConfigurationError(f"Invalid provider endpoint URL: {raw}")
    return raw.rstrip("/")


def load_provider_config(
    *,
    config_path: str | Path | None = None,
    env: Mapping[str, str] | None = None,
    overrides: Mapping[str, Any] | None = None,
) -> ProviderConfig:
    """Load provider configuration from overrides, environment and optional YAML."""

    env_map = os.environ if env is None else env
    explicit_path = config_path is not None or _CONFIG_PATH_OVERRIDE is not None
    path = (
        Path(config_path).expanduser()
        if config_path is not None
        else _CONFIG_PATH_OVERRIDE or DEFAULT_CONFIG_PATH
    )

    file_config = _load_config_file(path, required=explicit_path)
    section = file_config.get("provider", {}) if isinstance(file_config, dict) else {}
    if section and not isinstance(section, dict):
        raise ConfigurationError(f"Expected 'provider' to be a mapping in {path}")

    override_map = dict(overrides or {})

    network = _first_value(
        override_map.get("network"),
        env_map.get("VERMILION_NETWORK"),
        section.get("network"),
        DEFAULT_NETWORK,
    )
    endpoint = _validate_endpoint(
        _first_value(
            override_map.get("endpoint"),
            env_map.get("VERMILION_API_URL"),
            section.get("endpoint"),
        )
    )
    timeout = _first_value(
        _coerce_float(override_map.get("timeout"), source="overrides"),
        _coerce_float(env_map.get("VERMILION_TIMEOUT"), source="environment"),
        _coerce_float(section.get("timeout"), source=f"{path} provider.timeout"),
        DEFAULT_TIMEOUT_SECONDS,
    )
    if timeout <= 0:
        raise ConfigurationError(f"Provider timeout must be positive, got {timeout}")

    min_fee_rate = _first_value(
        _coerce_float(override_map.get("min_fee_rate_satvb"), source="overrides"),
        _coerce_float(env_map.get("VERMILION_MIN_FEE_RATE_SATVB"), source="environment"),
        _coerce_float(section.get("min_fee_rate_satvb"), source=f"{path} provider.min_fee_rate_satvb"),
    )
    fee_tier = _first_value(
        override_map.get("fee_tier"),
        env_map.get("VERMILION_FEE_TIER"),
        section.get("fee_tier"),
        DEFAULT_FEE_TIER,
    )
    if fee_tier not in FEE_TIERS:
        raise ConfigurationError(
            f"Unknown fee tier '{fee_tier}'; expected one of: {', '.join(FEE_TIERS)}"
        )

    return ProviderConfig(
        network=str(network).strip().lower(),
        endpoint=endpoint,
        timeout=float(timeout),
        min_fee_rate_satvb=min_fee_rate,
        fee_tier=fee_tier,
    )
