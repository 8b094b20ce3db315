# config.py
import os
import tomllib
from dataclasses import dataclass, asdict
from pathlib import Path
from typing import Any

CONFIG_FILE = "bj.toml"

DEFAULT_LOG_DIR = "logs"
DEFAULT_VIEWER = "less"
DEFAULT_AUTO_PRUNE_HOURS = 24  # 0 disables auto-prune

DEFAULT_CONFIG_TEXT = f"""\
# bj configuration
log_dir = "{DEFAULT_LOG_DIR}"
viewer = "{DEFAULT_VIEWER}"
# prune successful jobs older than this many hours on every invocation (0 = off)
auto_prune_hours = {DEFAULT_AUTO_PRUNE_HOURS}
"""


class ConfigError(RuntimeError):
    pass


def _as_int(value: Any, *, key: str) -> int:
    if isinstance(value, bool):
        raise ConfigError(f"Invalid int for {key}: {value!r}")
    try:
        return int(value)
    except (TypeError, ValueError) as e:
        raise ConfigError(f"Invalid int for {key}: {value!r}") from e


def _as_str(value: Any, *, key: str) -> str:
    if not isinstance(value, str):
        raise ConfigError(f"Invalid string for {key}: {value!r}")
    return value


def config_dir() -> Path:
    """Directory holding bj.toml, the job ledger and (by default) the logs."""
    override = os.environ.get("BJ_CONFIG_DIR")
    if override:
        # absolute: detached children run in the job's working directory
        return Path(override).expanduser().resolve()
    return Path.home() / ".config" / "bj"


@dataclass(frozen=True)
class Config:
    log_dir: str = DEFAULT_LOG_DIR
    viewer: str = DEFAULT_VIEWER
    auto_prune_hours: int = DEFAULT_AUTO_PRUNE_HOURS
    base_dir: Path | None = None

    def __post_init__(self):
        if self.base_dir is None:
            object.__setattr__(self, "base_dir", config_dir())

    @property
    def ledger_path(self) -> Path:
        return self.base_dir / "jobs.json"

    @property
    def lock_path(self) -> Path:
        return self.base_dir / "jobs.lock"

    def log_dir_path(self) -> Path:
        p = Path(self.log_dir).expanduser()
        if not p.is_absolute():
            p = self.base_dir / p
        return p

    def as_dict(self) -> dict:
        data = asdict(self)
        data.pop("base_dir")
        return data


def load_config(path: Path | None = None, write_default: bool = True) -> Config:
    """Read bj.toml, writing the defaults first if it does not exist yet.

    With write_default=False a missing file just yields the defaults and
    nothing is created on disk.
    """
    cfg_path = Path(path or config_dir() / CONFIG_FILE).expanduser().resolve()
    base_dir = cfg_path.parent

    if not cfg_path.exists():
        if not write_default:
            return Config(base_dir=base_dir)
        try:
            base_dir.mkdir(parents=True, exist_ok=True)
            cfg_path.write_text(DEFAULT_CONFIG_TEXT, encoding="utf-8")
        except OSError as e:
            raise ConfigError(f"Could not create default config at {cfg_path}: {e}") from e
        return Config(base_dir=base_dir)

    try:
        raw = tomllib.loads(cfg_path.read_text(encoding="utf-8"))
    except (OSError, tomllib.TOMLDecodeError) as e:
        raise ConfigError(f"Could not read {cfg_path}: {e}") from e

    log_dir = _as_str(raw.get("log_dir") or DEFAULT_LOG_DIR, key="log_dir")
    viewer = _as_str(raw.get("viewer") or DEFAULT_VIEWER, key="viewer")
    auto_prune_hours = _as_int(raw.get("auto_prune_hours", DEFAULT_AUTO_PRUNE_HOURS), key="auto_prune_hours")
    if auto_prune_hours < 0:
        raise ConfigError(f"Invalid auto_prune_hours: must be >= 0, got {auto_prune_hours}")

    return Config(log_dir=log_dir, viewer=viewer, auto_prune_hours=auto_prune_hours, base_dir=base_dir)
