"""
mnemo configuration.

A ``Config`` is built from defaults, then an optional TOML file, then
``MNEMO_*`` environment variables (later sources win), and is handed to
``MemoryStore`` explicitly. Nothing reads configuration from module state.

Example ``~/.config/mnemo/config.toml``::

    database_path = "~/notes/memories.db"
    similarity_threshold = 0.9
    recency_weight = 0.2

    [decay]
    function = "linear"
    horizon_days = 60
"""

import logging
import math
import os
import tomllib
from dataclasses import dataclass, field, fields, replace
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

from mnemo.conflict import DEFAULT_SIMILARITY_THRESHOLD
from mnemo.errors import ConfigError, ValidationError
from mnemo.fusion import DEFAULT_RRF_K
from mnemo.recency import DecayConfig, DecayFunction, validate_recency_weight

logger = logging.getLogger("mnemo.config")

DEFAULT_MODEL = "BAAI/bge-small-en-v1.5"


def mnemo_home() -> Path:
    """Resolve MNEMO_HOME lazily so tests can override via env var."""
    return Path(os.environ.get("MNEMO_HOME", str(Path.home() / ".mnemo"))).expanduser()


def default_config_path() -> Path:
    explicit = os.environ.get("MNEMO_CONFIG")
    if explicit:
        return Path(explicit).expanduser()
    xdg = os.environ.get("XDG_CONFIG_HOME")
    base = Path(xdg).expanduser() if xdg else Path.home() / ".config"
    return base / "mnemo" / "config.toml"


@dataclass
class Config:
    """Everything tunable about a store. Paths default under MNEMO_HOME."""

    database_path: Path = field(default_factory=lambda: mnemo_home() / "memories.db")
    embedding_model: str = DEFAULT_MODEL
    model_cache: Path = field(default_factory=lambda: mnemo_home() / "models")
    embedding_dim: int = 384
    similarity_threshold: float = DEFAULT_SIMILARITY_THRESHOLD
    recency_weight: float = 0.0
    decay_function: DecayFunction = DecayFunction.EXPONENTIAL
    decay_lambda: float = 1e-6
    decay_horizon_days: float = 30.0
    decay_offset_days: float = 0.0
    rrf_k: int = DEFAULT_RRF_K
    busy_timeout_ms: int = 5000
    busy_retries: int = 3
    max_content_length: int = 100_000
    max_limit: int = 10_000

    @property
    def decay(self) -> DecayConfig:
        return DecayConfig(
            function=self.decay_function,
            lambda_=self.decay_lambda,
            horizon_days=self.decay_horizon_days,
            offset_days=self.decay_offset_days,
        )

    def validate(self) -> "Config":
        if not (0.0 <= self.similarity_threshold <= 1.0):
            raise ConfigError("similarity_threshold", f"{self.similarity_threshold} is outside [0, 1]")
        try:
            validate_recency_weight(self.recency_weight)
        except ValidationError as e:
            raise ConfigError("recency_weight", str(e)) from e
        if self.embedding_dim <= 0:
            raise ConfigError("embedding_dim", "must be positive")
        if self.rrf_k <= 0:
            raise ConfigError("rrf_k", "must be positive")
        if self.busy_timeout_ms < 0:
            raise ConfigError("busy_timeout_ms", "must be >= 0")
        if self.busy_retries < 1:
            raise ConfigError("busy_retries", "must be >= 1")
        if self.max_content_length <= 0:
            raise ConfigError("max_content_length", "must be positive")
        if self.max_limit <= 0:
            raise ConfigError("max_limit", "must be positive")
        self.decay.validate()
        return self

    def with_overrides(self, **changes: Any) -> "Config":
        """Copy with some fields replaced, re-coerced and re-validated."""
        values = {name: _coerce(name, value) for name, value in changes.items() if value is not None}
        return replace(self, **values).validate()

    @classmethod
    def load(
        cls,
        path: Optional[Path] = None,
        environ: Optional[Mapping[str, str]] = None,
    ) -> "Config":
        """Defaults < TOML file < environment variables."""
        environ = os.environ if environ is None else environ
        values: Dict[str, Any] = {}

        config_path = Path(path).expanduser() if path else default_config_path()
        if config_path.exists():
            values.update(_read_toml(config_path))

        for env_name, key in _ENV_KEYS.items():
            raw = environ.get(env_name)
            if raw is not None and raw.strip() != "":
                values[key] = _coerce(key, raw.strip())

        return cls(**values).validate()


_FIELD_TYPES = {f.name: f.type for f in fields(Config)}

_ENV_KEYS = {
    "MNEMO_DATABASE_PATH": "database_path",
    "MNEMO_EMBEDDING_MODEL": "embedding_model",
    "MNEMO_MODEL_CACHE": "model_cache",
    "MNEMO_SIMILARITY_THRESHOLD": "similarity_threshold",
    "MNEMO_RECENCY_WEIGHT": "recency_weight",
    "MNEMO_DECAY_FUNCTION": "decay_function",
    "MNEMO_DECAY_LAMBDA": "decay_lambda",
    "MNEMO_DECAY_HORIZON_DAYS": "decay_horizon_days",
    "MNEMO_DECAY_OFFSET_DAYS": "decay_offset_days",
    "MNEMO_RRF_K": "rrf_k",
}

# [decay] table keys -> Config fields
_DECAY_TABLE_KEYS = {
    "function": "decay_function",
    "lambda": "decay_lambda",
    "horizon_days": "decay_horizon_days",
    "offset_days": "decay_offset_days",
}


def _coerce(key: str, value: Any) -> Any:
    kind = _FIELD_TYPES[key]
    try:
        if kind is Path:
            return Path(str(value)).expanduser()
        if kind is DecayFunction:
            return value if isinstance(value, DecayFunction) else DecayFunction(str(value).lower())
        if kind is int:
            if isinstance(value, bool) or (isinstance(value, float) and not value.is_integer()):
                raise ValueError(value)
            return int(value)
        if kind is float:
            if isinstance(value, bool):
                raise ValueError(value)
            result = float(value)
            if not math.isfinite(result):
                raise ValueError(value)
            return result
        return str(value)
    except ValueError as e:
        raise ConfigError(key, f"invalid value {value!r}") from e


def _read_toml(path: Path) -> Dict[str, Any]:
    try:
        with open(path, "rb") as f:
            data = tomllib.load(f)
    except tomllib.TOMLDecodeError as e:
        raise ConfigError(str(path), f"not valid TOML: {e}") from e

    flat = dict(data)
    decay = flat.pop("decay", None)
    if isinstance(decay, dict):
        for sub_key, value in decay.items():
            if sub_key in _DECAY_TABLE_KEYS:
                flat[_DECAY_TABLE_KEYS[sub_key]] = value
            else:
                logger.warning("Ignoring unknown config key decay.%s in %s", sub_key, path)
    elif decay is not None:
        logger.warning("Ignoring config key decay in %s: expected a table, got %s", path, type(decay).__name__)

    values = {}
    for key, value in flat.items():
        if key not in _FIELD_TYPES:
            logger.warning("Ignoring unknown config key %s in %s", key, path)
            continue
        values[key] = _coerce(key, value)
    logger.debug("Loaded %d config value(s) from %s", len(values), path)
    return values
