# config.py
from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path

DEFAULT_CACHE_DIR = ".pipewright/cache"
DEFAULT_TIMEOUT = 360 * 60.0    # seconds, per job
DEFAULT_GRACE_PERIOD = 10.0     # seconds between terminate and kill


@dataclass
class EngineConfig:
    """
    Knobs for one pipeline run. The CLI fills these from its options
    (each of which can also come from a PIPEWRIGHT_* environment variable).
    """
    repo_root: Path = field(default_factory=lambda: Path("."))
    cache_dir: Path | None = field(default_factory=lambda: Path(DEFAULT_CACHE_DIR))
    max_workers: int | None = None          # None = one worker per node
    default_timeout: float = DEFAULT_TIMEOUT
    grace_period: float = DEFAULT_GRACE_PERIOD
    save_cache_on_exact_hit: bool = False
    env: dict[str, str] = field(default_factory=dict)

    def __post_init__(self) -> None:
        self.repo_root = Path(self.repo_root).expanduser().resolve()
        if self.cache_dir is not None:
            cache_dir = Path(self.cache_dir).expanduser()
            if not cache_dir.is_absolute():
                cache_dir = self.repo_root / cache_dir
            self.cache_dir = cache_dir
        if self.max_workers is not None and self.max_workers < 1:
            raise ValueError(f"max_workers must be >= 1, got {self.max_workers}")
        if self.default_timeout <= 0:
            raise ValueError(f"default_timeout must be > 0, got {self.default_timeout}")

    @classmethod
    def from_env(cls, **overrides) -> "EngineConfig":
        """Defaults from PIPEWRIGHT_* variables, then explicit overrides."""
        values: dict = {}
        if "PIPEWRIGHT_CACHE_DIR" in os.environ:
            values["cache_dir"] = Path(os.environ["PIPEWRIGHT_CACHE_DIR"])
        if "PIPEWRIGHT_WORKERS" in os.environ:
            values["max_workers"] = int(os.environ["PIPEWRIGHT_WORKERS"])
        if "PIPEWRIGHT_DEFAULT_TIMEOUT" in os.environ:
            values["default_timeout"] = float(os.environ["PIPEWRIGHT_DEFAULT_TIMEOUT"])
        if "PIPEWRIGHT_GRACE_PERIOD" in os.environ:
            values["grace_period"] = float(os.environ["PIPEWRIGHT_GRACE_PERIOD"])
        values.update({k: v for k, v in overrides.items() if v is not None})
        return cls(**values)
