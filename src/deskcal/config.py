"""deskcal configuration loading and validation.

Reads the ``[deskcal]`` table from a TOML file, applies ``DESKCAL_*``
environment overrides once at load time, and returns a validated
:class:`DeskcalConfig`. Backends receive the resulting value at construction
and never consult the environment while serving calls.
"""

from __future__ import annotations

import os
import tomllib
from collections.abc import Mapping
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from deskcal.errors import ValidationError
from deskcal.timeutil import parse_duration

DEFAULT_BACKEND = "apple"
DEFAULT_TIMEOUT_SECONDS = 15.0
DEFAULT_RETRIES = 2
DEFAULT_RETRY_BACKOFF_SECONDS = 0.2
MAX_RETRIES = 10

DEFAULT_STORE_PATHS: tuple[str, ...] = (
    "~/Library/Group Containers/group.com.apple.calendar/Calendar.sqlitedb",
    "~/Library/Calendars/Calendar.sqlitedb",
)

_VALID_LOG_FORMATS = ("text", "json")


class ConfigError(Exception):
    """Raised when deskcal configuration is missing, malformed, or invalid."""


@dataclass(frozen=True)
class LoggingConfig:
    """Logging configuration from the [deskcal.logging] table."""

    level: str = "WARNING"
    format: str = "text"  # "text" or "json"


@dataclass(frozen=True)
class RetryPolicy:
    """Retry policy for transient automation failures.

    ``retries`` extra attempts are made after the first failure, waiting a
    fixed ``backoff_seconds`` between attempts.
    """

    retries: int = DEFAULT_RETRIES
    backoff_seconds: float = DEFAULT_RETRY_BACKOFF_SECONDS

    @property
    def attempts(self) -> int:
        return self.retries + 1


def default_journal_dir(env: Mapping[str, str] | None = None) -> Path:
    env = os.environ if env is None else env
    xdg = env.get("XDG_CONFIG_HOME", "").strip()
    if xdg:
        return Path(xdg) / "deskcal"
    return Path(env.get("HOME", "~")).expanduser() / ".config" / "deskcal"


@dataclass(frozen=True)
class DeskcalConfig:
    """Validated runtime configuration for one command invocation."""

    backend: str = DEFAULT_BACKEND
    timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS
    retry: RetryPolicy = field(default_factory=RetryPolicy)
    store_paths: tuple[Path, ...] = field(
        default_factory=lambda: tuple(Path(p).expanduser() for p in DEFAULT_STORE_PATHS)
    )
    journal_dir: Path = field(default_factory=default_journal_dir)
    timezone: str = "UTC"
    verbose: bool = False
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    @property
    def tzinfo(self) -> ZoneInfo:
        return ZoneInfo(self.timezone)

    def with_overrides(self, **changes: Any) -> DeskcalConfig:
        return replace(self, **changes)


def _coerce_seconds(value: Any, key: str) -> float:
    if isinstance(value, bool):
        raise ConfigError(f"{key} must be a number or duration, got {value!r}")
    if isinstance(value, int | float):
        seconds = float(value)
    else:
        try:
            seconds = parse_duration(str(value)).total_seconds()
        except ValidationError as exc:
            raise ConfigError(f"{key}: {exc.message}") from exc
    if seconds < 0:
        raise ConfigError(f"{key} must be >= 0, got {value!r}")
    return seconds


def _coerce_retries(value: Any) -> int:
    try:
        retries = int(value)
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"retries must be an integer, got {value!r}") from exc
    return max(0, min(retries, MAX_RETRIES))


def _coerce_bool(value: Any, key: str) -> bool:
    if isinstance(value, bool):
        return value
    text = str(value).strip().lower()
    if text in ("1", "true", "yes", "on"):
        return True
    if text in ("0", "false", "no", "off", ""):
        return False
    raise ConfigError(f"{key} must be a boolean, got {value!r}")


def _validate_timezone(name: str) -> str:
    try:
        ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise ConfigError(f"timezone must be a valid IANA timezone: {name!r}") from exc
    return name


def _parse_logging(raw: Mapping[str, Any], base: LoggingConfig) -> LoggingConfig:
    level = str(raw.get("level", base.level)).upper()
    fmt = str(raw.get("format", base.format)).lower()
    if fmt not in _VALID_LOG_FORMATS:
        raise ConfigError(f"logging.format must be one of {_VALID_LOG_FORMATS}, got {fmt!r}")
    return LoggingConfig(level=level, format=fmt)


def parse_config(raw: Mapping[str, Any], base: DeskcalConfig | None = None) -> DeskcalConfig:
    """Build a config from the contents of a ``[deskcal]`` table."""
    cfg = base or DeskcalConfig()
    changes: dict[str, Any] = {}

    if "backend" in raw:
        backend = str(raw["backend"]).strip()
        if not backend:
            raise ConfigError("backend must be non-empty")
        changes["backend"] = backend
    if "timeout" in raw:
        changes["timeout_seconds"] = _coerce_seconds(raw["timeout"], "timeout")
    if "timezone" in raw:
        changes["timezone"] = _validate_timezone(str(raw["timezone"]).strip())
    if "verbose" in raw:
        changes["verbose"] = _coerce_bool(raw["verbose"], "verbose")
    if "journal_dir" in raw:
        changes["journal_dir"] = Path(str(raw["journal_dir"])).expanduser()
    if "store_paths" in raw:
        paths = raw["store_paths"]
        if isinstance(paths, str):
            paths = [paths]
        if not isinstance(paths, list) or not all(isinstance(p, str) for p in paths):
            raise ConfigError("store_paths must be a list of strings")
        changes["store_paths"] = tuple(Path(p).expanduser() for p in paths)

    retry_raw = raw.get("retry", {})
    if not isinstance(retry_raw, Mapping):
        raise ConfigError("[deskcal.retry] must be a table")
    if retry_raw:
        changes["retry"] = RetryPolicy(
            retries=_coerce_retries(retry_raw.get("retries", cfg.retry.retries)),
            backoff_seconds=_coerce_seconds(
                retry_raw.get("backoff", cfg.retry.backoff_seconds), "retry.backoff"
            ),
        )

    logging_raw = raw.get("logging", {})
    if not isinstance(logging_raw, Mapping):
        raise ConfigError("[deskcal.logging] must be a table")
    if logging_raw:
        changes["logging"] = _parse_logging(logging_raw, cfg.logging)

    return replace(cfg, **changes)


def apply_env(cfg: DeskcalConfig, env: Mapping[str, str]) -> DeskcalConfig:
    """Apply ``DESKCAL_*`` overrides on top of *cfg*."""

    def get(name: str) -> str:
        return env.get(name, "").strip()

    changes: dict[str, Any] = {}
    if value := get("DESKCAL_BACKEND"):
        changes["backend"] = value
    if value := get("DESKCAL_TIMEOUT"):
        changes["timeout_seconds"] = _coerce_seconds(value, "DESKCAL_TIMEOUT")
    if value := get("DESKCAL_TIMEZONE"):
        changes["timezone"] = _validate_timezone(value)
    if value := get("DESKCAL_JOURNAL_DIR"):
        changes["journal_dir"] = Path(value).expanduser()
    if value := get("DESKCAL_VERBOSE"):
        changes["verbose"] = _coerce_bool(value, "DESKCAL_VERBOSE")

    retries = get("DESKCAL_AUTOMATION_RETRIES")
    backoff = get("DESKCAL_AUTOMATION_RETRY_BACKOFF")
    if retries or backoff:
        changes["retry"] = RetryPolicy(
            retries=_coerce_retries(retries) if retries else cfg.retry.retries,
            backoff_seconds=(
                _coerce_seconds(backoff, "DESKCAL_AUTOMATION_RETRY_BACKOFF")
                if backoff
                else cfg.retry.backoff_seconds
            ),
        )

    level = get("DESKCAL_LOG_LEVEL")
    fmt = get("DESKCAL_LOG_FORMAT")
    if level or fmt:
        changes["logging"] = _parse_logging(
            {"level": level or cfg.logging.level, "format": fmt or cfg.logging.format},
            cfg.logging,
        )
    return replace(cfg, **changes)


def load_config(
    path: Path | None = None,
    env: Mapping[str, str] | None = None,
) -> DeskcalConfig:
    """Load configuration from *path* (optional) and the environment.

    A missing file at an explicitly given path is an error; a file without a
    ``[deskcal]`` table yields defaults.
    """
    env = os.environ if env is None else env
    cfg = DeskcalConfig(journal_dir=default_journal_dir(env))

    if path is not None:
        path = Path(path)
        if not path.is_file():
            raise ConfigError(f"config file not found: {path}")
        try:
            with path.open("rb") as fh:
                data = tomllib.load(fh)
        except tomllib.TOMLDecodeError as exc:
            raise ConfigError(f"invalid TOML in {path}: {exc}") from exc
        section = data.get("deskcal", {})
        if not isinstance(section, dict):
            raise ConfigError("[deskcal] must be a table")
        cfg = parse_config(section, cfg)

    return apply_env(cfg, env)
