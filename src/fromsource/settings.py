"""Run settings with strict validation.

Settings are layered: defaults, then an optional JSON settings file, then
``FROMSOURCE_*`` environment variables, then explicit overrides (CLI flags).
"""

import json
import os
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

from packaging.utils import canonicalize_name
from pydantic import BaseModel, ConfigDict, Field, field_validator

from ._internal.retry import RetryPolicy
from .kernel.resolver import PYPI_SIMPLE_URL

ENV_PREFIX = "FROMSOURCE_"


class Settings(BaseModel):
    """Settings for one bootstrap or build run."""
    work_dir: Path = Path("work-dir")
    sdists_repo: Path = Path("sdists-repo")
    wheels_repo: Path = Path("wheels-repo")
    cache_dir: Optional[Path] = Field(
        None,
        description="Local artifact cache; defaults to <wheels_repo>/cache",
    )
    cache_url: Optional[str] = Field(
        None,
        description="Read-only remote artifact cache (PEP 691 simple index)",
    )
    index_url: str = PYPI_SIMPLE_URL
    sdist_only: bool = Field(
        False,
        description="Discovery only: build source distributions but not final artifacts",
    )
    max_workers: int = Field(default_factory=lambda: os.cpu_count() or 1, ge=1)
    stop_on_first_failure: bool = False
    pre_built: List[str] = Field(
        default_factory=list,
        description="Packages installed from existing artifacts instead of being rebuilt",
    )
    allow_prereleases: bool = False
    retry_attempts: int = Field(5, ge=1)
    retry_base_delay: float = Field(1.0, ge=0)
    retry_max_delay: float = Field(30.0, ge=0)

    model_config = ConfigDict(extra="forbid")

    @field_validator("pre_built")
    @classmethod
    def canonicalize_pre_built(cls, v: List[str]) -> List[str]:
        return sorted({canonicalize_name(name) for name in v if name.strip()})

    def is_pre_built(self, name: str) -> bool:
        return canonicalize_name(name) in self.pre_built

    @property
    def graph_path(self) -> Path:
        return self.work_dir / "graph.json"

    @property
    def build_order_path(self) -> Path:
        return self.work_dir / "build-order.json"

    @property
    def constraints_path(self) -> Path:
        return self.work_dir / "constraints.txt"

    @property
    def local_cache_dir(self) -> Path:
        return self.cache_dir or (self.wheels_repo / "cache")

    def retry_policy(self) -> RetryPolicy:
        return RetryPolicy(
            attempts=self.retry_attempts,
            base_delay=self.retry_base_delay,
            max_delay=self.retry_max_delay,
        )

    @classmethod
    def load(
        cls,
        path: Optional[Path] = None,
        env: Optional[Mapping[str, str]] = None,
        **overrides: Any,
    ) -> "Settings":
        """Load layered settings.

        Args:
            path: Optional JSON settings file
            env: Environment mapping (defaults to ``os.environ``)
            overrides: Explicit values; ``None`` values are ignored

        Raises:
            ValueError: If the file or any value is invalid
        """
        data: Dict[str, Any] = {}
        if path is not None:
            with open(path, "r", encoding="utf-8") as f:
                loaded = json.load(f)
            if not isinstance(loaded, dict):
                raise ValueError(f"Settings file {path} must contain a JSON object")
            data.update(loaded)
        data.update(_from_env(os.environ if env is None else env))
        data.update({k: v for k, v in overrides.items() if v is not None})
        return cls(**data)


def _from_env(env: Mapping[str, str]) -> Dict[str, Any]:
    values: Dict[str, Any] = {}
    for name, field_info in Settings.model_fields.items():
        raw = env.get(ENV_PREFIX + name.upper())
        if raw is None:
            continue
        if field_info.annotation == List[str]:
            values[name] = [item.strip() for item in raw.split(",") if item.strip()]
        else:
            values[name] = raw
    return values
