"""
Configuration loader for fedround.

Loads config.yaml and validates the ``session:`` section into a frozen
SessionConfig.

Precedence (lowest to highest):
    1. SessionConfig field defaults (always present)
    2. config.yaml session: section
    3. Environment variables FEDROUND_*
    4. Explicit keyword overrides
"""

import os
from pathlib import Path
from typing import Any, Callable, Dict, Optional, Tuple

import structlog
import yaml
from pydantic import ValidationError

from core.exceptions import ConfigurationError
from core.models import SessionConfig
from core.utils import merge_configs, resolve_env_vars

logger = structlog.get_logger(__name__)


def _search_paths():
    return [
        os.environ.get("FEDROUND_CONFIG", ""),
        "config/config.yaml",
        str(Path(__file__).parent / "config.yaml"),
    ]


_cached_config: Optional[Dict] = None


def _parse_bool(value: str) -> bool:
    return value.lower() in ("1", "true", "yes")


def _parse_optional_float(value: str) -> Optional[float]:
    if value.lower() in ("", "none", "null"):
        return None
    return float(value)


# env var -> (dotted key inside session:, converter)
ENV_MAPPING: Dict[str, Tuple[str, Callable[[str], Any]]] = {
    "FEDROUND_MODEL_SIZE": ("model_size", int),
    "FEDROUND_SELECTION_FRACTION": ("client_selection_fraction", float),
    "FEDROUND_MIN_CLIENTS": ("min_clients", int),
    "FEDROUND_MAX_CLIENTS": ("max_clients", int),
    "FEDROUND_ROUND_TIMEOUT": ("round_timeout", float),
    "FEDROUND_STRATEGY": ("strategy", str),
    "FEDROUND_MAX_ROUNDS": ("max_rounds", int),
    "FEDROUND_MAX_CONSECUTIVE_FAILURES": ("max_consecutive_failures", int),
    "FEDROUND_SEED": ("seed", int),
    "FEDROUND_DP_EPSILON": ("privacy.epsilon", float),
    "FEDROUND_DP_DELTA": ("privacy.delta", float),
    "FEDROUND_DP_CLIP_NORM": ("privacy.clip_norm", float),
    "FEDROUND_DP_TOTAL_EPSILON": ("privacy.total_epsilon", _parse_optional_float),
    "FEDROUND_DP_ACCOUNTANT": ("privacy.accountant", str),
    "FEDROUND_TOP_K_RATIO": ("compression.top_k_ratio", float),
    "FEDROUND_QUANT_BITS": ("compression.quant_bits", int),
    "FEDROUND_OUTLIER_K": ("robustness.outlier_k", _parse_optional_float),
    "FEDROUND_BYZANTINE_FRACTION": ("robustness.byzantine_fraction", float),
    "FEDROUND_TRIM_TAILS": ("robustness.trim_tails", str),
    "FEDROUND_PATIENCE": ("convergence.patience", int),
    "FEDROUND_MIN_DELTA": ("convergence.min_delta", float),
}


def _find_config_file() -> Optional[Path]:
    """Find config.yaml from search paths."""
    for path_str in _search_paths():
        if not path_str:
            continue
        p = Path(path_str)
        if p.is_file():
            return p
    return None


def load_config(config_path: Optional[str] = None) -> Dict[str, Any]:
    """
    Load and cache the full config.yaml.

    Args:
        config_path: Optional explicit path. If None, uses search order.

    Returns:
        Full parsed YAML dict. Returns empty dict if no config found.

    Raises:
        ConfigurationError: If an explicit path is missing or the YAML is invalid.
    """
    global _cached_config

    if _cached_config is not None and config_path is None:
        return _cached_config

    if config_path:
        p = Path(config_path)
        if not p.is_file():
            raise ConfigurationError(f"Configuration file not found: {p}")
    else:
        p = _find_config_file()

    if p is None:
        loaded: Dict[str, Any] = {}
    else:
        try:
            with open(p, "r", encoding="utf-8") as f:
                loaded = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML in {p}: {e}") from e
        loaded = resolve_env_vars(loaded)
        logger.debug("Configuration file loaded", path=str(p))

    if config_path is None:
        _cached_config = loaded
    return loaded


def reload_config():
    """Force reload of config (clears cache)."""
    global _cached_config
    _cached_config = None


def _set_dotted(target: Dict[str, Any], dotted_key: str, value: Any) -> None:
    parts = dotted_key.split(".")
    node = target
    for part in parts[:-1]:
        node = node.setdefault(part, {})
    node[parts[-1]] = value


def get_env_overrides() -> Dict[str, Any]:
    """
    Collect FEDROUND_* environment overrides as a nested dict.

    Raises:
        ConfigurationError: If a variable cannot be converted.
    """
    overrides: Dict[str, Any] = {}
    for env_var, (key, converter) in ENV_MAPPING.items():
        val = os.environ.get(env_var)
        if val is None:
            continue
        try:
            _set_dotted(overrides, key, converter(val))
        except (ValueError, TypeError) as e:
            raise ConfigurationError(
                f"Invalid value for {env_var}: {val!r}", config_key=key
            ) from e
    return overrides


def get_logging_config() -> Dict[str, Any]:
    """Return the logging: section with fallbacks."""
    section = load_config().get("logging", {}) or {}
    return {
        "level": section.get("level", "INFO"),
        "log_format": section.get("format", "json"),
        "log_file": section.get("file"),
    }


def load_session_config(
    config_path: Optional[str] = None, **overrides: Any
) -> SessionConfig:
    """
    Build the frozen SessionConfig for a training session.

    Args:
        config_path: Optional explicit YAML path.
        **overrides: Top-level or nested (dict) overrides, highest precedence.

    Returns:
        Validated, immutable SessionConfig.

    Raises:
        ConfigurationError: If the merged values fail validation.
    """
    cfg = load_config(config_path)
    session = cfg.get("session", {}) or {}
    merged = merge_configs(session, get_env_overrides())
    merged = merge_configs(merged, overrides)

    try:
        config = SessionConfig.model_validate(merged)
    except ValidationError as e:
        first = e.errors()[0]
        key = ".".join(str(part) for part in first.get("loc", ()))
        raise ConfigurationError(
            f"Invalid session configuration: {first.get('msg')}", config_key=key or None
        ) from e

    logger.info(
        "Session configuration loaded",
        model_size=config.model_size,
        strategy=config.strategy.value,
        min_clients=config.min_clients,
        max_clients=config.max_clients,
    )
    return config
