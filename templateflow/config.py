"""templateflow pipeline configuration.

Typed configuration for the template pipeline.  Settings are Pydantic v2
models so they are validated at construction time and serialise to/from JSON
or environment variables without boiler-plate.
"""

from __future__ import annotations

import copy
import os
from collections.abc import Mapping
from pathlib import Path
from typing import Any, Union

from pydantic import BaseModel, Field

DEFAULT_TEMPLATE_EXTENSIONS: tuple[str, ...] = (".eta", ".template")

DEFAULT_IGNORE_PATTERNS: tuple[str, ...] = (
    "**/node_modules/**",
    "**/.git/**",
    "**/dist/**",
)


class VariableDelimiters(BaseModel):
    """Start/end markers around a variable expression inside template files."""

    start: str = Field(default="<%", min_length=1)
    end: str = Field(default="%>", min_length=1)


class PipelineConfig(BaseModel):
    """Tuning knobs for a template pipeline.

    A pipeline keeps a private copy of its configuration.  Partial overrides
    are merged one level deep: supplying ``variable_delimiters`` replaces the
    whole start/end pair.
    """

    cache_enabled: bool = Field(default=True, description="Serve repeat remote fetches from the cache")
    cache_ttl: int = Field(default=3600, ge=0, description="Cache entry lifetime in seconds")
    cache_dir: str = Field(default="", description="Cache root; empty means the XDG cache dir")
    verbose: bool = Field(default=False)
    dry_run: bool = Field(default=False, description="Plan file operations without writing them")
    template_extensions: list[str] = Field(
        default_factory=lambda: list(DEFAULT_TEMPLATE_EXTENSIONS),
        description="Extensions stripped from rendered file names",
    )
    ignore_patterns: list[str] = Field(
        default_factory=lambda: list(DEFAULT_IGNORE_PATTERNS),
        description="Glob patterns (relative to the template root) that are never rendered",
    )
    variable_delimiters: VariableDelimiters = Field(default_factory=VariableDelimiters)

    # ------------------------------------------------------------------
    # Merging
    # ------------------------------------------------------------------

    def merged(self, partial: Union["PipelineConfig", Mapping[str, Any], None]) -> "PipelineConfig":
        """Return a new config with *partial* laid over this one, field by field.

        *partial* may be a mapping or another ``PipelineConfig`` (only the
        fields explicitly set on it are applied).  Neither input is mutated
        and the result shares no mutable state with either.

        Raises:
            ValueError: If *partial* names a field that does not exist.
            pydantic.ValidationError: If a supplied value is invalid.
        """
        if partial is None:
            return self.model_copy(deep=True)
        if isinstance(partial, PipelineConfig):
            updates = {name: getattr(partial, name) for name in partial.model_fields_set}
        else:
            updates = dict(partial)

        unknown = sorted(set(updates) - set(type(self).model_fields))
        if unknown:
            raise ValueError(f"Unknown pipeline config option(s): {', '.join(unknown)}")

        data = self.model_dump()
        data.update(copy.deepcopy(updates))
        return type(self).model_validate(data)

    @property
    def resolved_cache_dir(self) -> Path:
        """Directory holding cached templates."""
        if self.cache_dir:
            return Path(self.cache_dir).expanduser()
        base = os.environ.get("XDG_CACHE_HOME") or str(Path.home() / ".cache")
        return Path(base) / "templateflow"

    # ------------------------------------------------------------------
    # Serialisation helpers
    # ------------------------------------------------------------------

    def save(self, path: Path) -> Path:
        """Persist the configuration to a JSON file and return its path."""
        target = Path(path)
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(self.model_dump_json(indent=2), encoding="utf-8")
        return target

    @classmethod
    def load(cls, path: Path) -> "PipelineConfig":
        """Load a previously-saved configuration from JSON."""
        raw = Path(path).read_text(encoding="utf-8")
        return cls.model_validate_json(raw)

    @classmethod
    def from_env(cls) -> "PipelineConfig":
        """Build a ``PipelineConfig`` from environment variables.

        Recognised variables (all optional):
            TEMPLATEFLOW_CACHE_ENABLED, TEMPLATEFLOW_CACHE_TTL,
            TEMPLATEFLOW_CACHE_DIR, TEMPLATEFLOW_VERBOSE, TEMPLATEFLOW_DRY_RUN,
            TEMPLATEFLOW_TEMPLATE_EXTENSIONS, TEMPLATEFLOW_IGNORE_PATTERNS,
            TEMPLATEFLOW_DELIMITERS (``start,end``).

        List-valued variables are comma-separated.
        """
        kwargs: dict[str, Any] = {}
        for name in ("cache_enabled", "verbose", "dry_run"):
            raw = os.environ.get(f"TEMPLATEFLOW_{name.upper()}")
            if raw:
                kwargs[name] = _env_flag(raw)
        if os.environ.get("TEMPLATEFLOW_CACHE_TTL"):
            kwargs["cache_ttl"] = int(os.environ["TEMPLATEFLOW_CACHE_TTL"])
        if os.environ.get("TEMPLATEFLOW_CACHE_DIR"):
            kwargs["cache_dir"] = os.environ["TEMPLATEFLOW_CACHE_DIR"]
        for name in ("template_extensions", "ignore_patterns"):
            raw = os.environ.get(f"TEMPLATEFLOW_{name.upper()}")
            if raw:
                kwargs[name] = [item.strip() for item in raw.split(",") if item.strip()]
        if os.environ.get("TEMPLATEFLOW_DELIMITERS"):
            start, _, end = os.environ["TEMPLATEFLOW_DELIMITERS"].partition(",")
            kwargs["variable_delimiters"] = VariableDelimiters(start=start.strip(), end=end.strip())

        return cls(**kwargs)


DEFAULT_PIPELINE_CONFIG = PipelineConfig()


def _env_flag(value: str) -> bool:
    return value.strip().lower() in {"1", "true", "yes", "on"}
