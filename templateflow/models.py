"""Pydantic v2 models shared by every stage of the template pipeline.

Covers the tagged ``TemplateSource`` union produced by the resolver, the
``template.json`` manifest (``TemplateMetadata`` / ``TemplateVariable``), the
file operations planned by the processor, and the result/statistics objects
returned by ``TemplatePipeline.execute``.
"""

from __future__ import annotations

import re
from enum import Enum
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, model_validator


# ---------------------------------------------------------------------------
# Template sources
# ---------------------------------------------------------------------------

class _Source(BaseModel):
    model_config = ConfigDict(frozen=True)


class GitHubSource(_Source):
    """A repository hosted on GitHub, optionally pinned to a ref and subdirectory."""
    type: Literal["github"] = "github"
    location: str = Field(..., description="'owner/repo' (or 'github:owner/repo')")
    ref: Optional[str] = Field(default=None, description="Branch, tag, or commit")
    subdir: Optional[str] = Field(default=None, description="Path inside the repository")


class LocalSource(_Source):
    """A template directory on the local filesystem."""
    type: Literal["local"] = "local"
    location: str = Field(..., description="Absolute or relative directory path")


class UrlSource(_Source):
    """A downloadable archive (or ``file://`` path)."""
    type: Literal["url"] = "url"
    location: str = Field(..., description="Archive URL")


class BuiltinSource(_Source):
    """A template bundled with templateflow, addressed by name."""
    type: Literal["builtin"] = "builtin"
    location: str = Field(..., description="Registered built-in template name")


TemplateSource = Annotated[
    Union[GitHubSource, LocalSource, UrlSource, BuiltinSource],
    Field(discriminator="type"),
]

_SOURCE_ADAPTER: TypeAdapter[Any] = TypeAdapter(TemplateSource)


def parse_source(data: dict[str, Any]) -> GitHubSource | LocalSource | UrlSource | BuiltinSource:
    """Build the matching source variant from a ``{"type": ..., ...}`` mapping."""
    return _SOURCE_ADAPTER.validate_python(data)


# ---------------------------------------------------------------------------
# Manifest models (template.json)
# ---------------------------------------------------------------------------

class VariableType(str, Enum):
    """Kinds of value a template variable may hold."""
    STRING = "string"
    BOOLEAN = "boolean"
    NUMBER = "number"
    SELECT = "select"


class TemplateVariable(BaseModel):
    """A customisable variable declared in a template manifest."""

    name: str = Field(..., min_length=1)
    description: str = Field(..., min_length=1)
    type: VariableType
    required: Optional[bool] = None
    default: Any = None
    pattern: Optional[str] = Field(default=None, description="Regex, string variables only")
    options: Optional[list[str]] = Field(default=None, description="Choices, select variables only")

    @model_validator(mode="after")
    def _check_type_constraints(self) -> "TemplateVariable":
        if self.type is VariableType.SELECT and not self.options:
            raise ValueError(f"select variable '{self.name}' must define a non-empty options list")
        if self.pattern is not None:
            if self.type is not VariableType.STRING:
                raise ValueError(f"pattern is only applicable to string variables ('{self.name}')")
            try:
                re.compile(self.pattern)
            except re.error as exc:
                raise ValueError(f"invalid pattern for '{self.name}': {exc}") from exc
        return self


class TemplateMetadata(BaseModel):
    """Parsed ``template.json`` manifest.

    Unknown keys are kept so a manifest can be loaded and saved back without
    losing data.  ``node_version`` is stored as ``nodeVersion`` on disk.
    """

    model_config = ConfigDict(extra="allow", populate_by_name=True)

    name: str = Field(..., min_length=1)
    description: str = Field(default="Template description not available")
    version: str = Field(default="1.0.0")
    author: Optional[str] = None
    tags: Optional[list[str]] = None
    variables: Optional[list[TemplateVariable]] = None
    dependencies: Optional[list[str]] = None
    node_version: Optional[str] = Field(default=None, alias="nodeVersion")


# ---------------------------------------------------------------------------
# Collaborator outputs
# ---------------------------------------------------------------------------

class ValidationResult(BaseModel):
    """Outcome of a structural check. Warnings never make a result invalid."""
    valid: bool
    errors: Optional[list[str]] = None
    warnings: Optional[list[str]] = None


class FetchOutput(BaseModel):
    """What a fetcher hands back: where the template was staged, plus its manifest."""
    path: str
    metadata: TemplateMetadata


class FileOperation(BaseModel):
    """A single file the processor wants written into the output directory."""
    type: Literal["create", "copy"]
    target: str = Field(..., description="Path relative to the output directory")
    content: Optional[str] = Field(default=None, description="Rendered text for 'create'")
    source: Optional[str] = Field(default=None, description="Path relative to the template root")


class ProcessOutput(BaseModel):
    operations: list[FileOperation] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Pipeline results
# ---------------------------------------------------------------------------

class ResolvedTemplate(BaseModel):
    """The template a pipeline run worked on."""
    metadata: TemplateMetadata
    path: str = Field(..., description="Staging directory the template was rendered from")
    source: Optional[TemplateSource] = None


class PipelineStats(BaseModel):
    """Timing and volume figures for one pipeline run."""
    total_time_ms: float = Field(default=0.0, ge=0.0)
    stage_timings: dict[str, float] = Field(default_factory=dict)
    files_processed: int = Field(default=0, ge=0)
    cache_hit: bool = False


class PipelineResult(BaseModel):
    template: ResolvedTemplate
    operations: list[FileOperation] = Field(default_factory=list)
    stats: PipelineStats = Field(default_factory=PipelineStats)
