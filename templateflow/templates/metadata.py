"""``template.json`` manifest handling.

Loads, validates, creates and saves the manifest that sits at the root of
every template.  Missing manifests and missing fields fall back to defaults
derived from the template directory.
"""

from __future__ import annotations

import json
import re
from collections.abc import Mapping
from pathlib import Path
from typing import Any

from pydantic import ValidationError

from templateflow.models import TemplateMetadata, ValidationResult
from templateflow.result import Err, Ok, Result, TemplateError, TemplateErrorCode
from templateflow.utils import write_json_file

MANIFEST_FILENAME = "template.json"
DEFAULT_DESCRIPTION = "Template description not available"
DEFAULT_VERSION = "1.0.0"

_SEMVER_PATTERN = re.compile(r"^\d+\.\d+\.\d+")

# Canonical key order when a manifest is written back to disk.
_KEY_ORDER: tuple[str, ...] = (
    "name",
    "description",
    "version",
    "author",
    "tags",
    "variables",
    "dependencies",
    "nodeVersion",
)


class TemplateMetadataManager:
    """Reads and writes ``template.json`` manifests."""

    def defaults_for(self, template_path: str | Path, default_name: str | None = None) -> dict[str, Any]:
        """Fallback manifest values for a template directory."""
        return {
            "name": default_name or Path(template_path).name or "template",
            "description": DEFAULT_DESCRIPTION,
            "version": DEFAULT_VERSION,
        }

    def load(
        self, template_path: str | Path, default_name: str | None = None,
    ) -> Result[TemplateMetadata]:
        """Load the manifest of the template at *template_path*.

        A missing manifest is not an error: defaults are returned, named
        after *default_name* or the directory.  A manifest that cannot be
        parsed, or that fails validation, yields ``Err``.
        """
        manifest = Path(template_path) / MANIFEST_FILENAME
        defaults = self.defaults_for(template_path, default_name)

        if not manifest.is_file():
            return Ok(TemplateMetadata.model_validate(defaults))

        try:
            raw = json.loads(manifest.read_text(encoding="utf-8"))
        except (OSError, UnicodeDecodeError, json.JSONDecodeError) as exc:
            return Err(TemplateError(
                f"Failed to read template metadata from {manifest}: {exc}",
                TemplateErrorCode.TEMPLATE_INVALID,
                {"path": str(manifest)},
            ))
        if not isinstance(raw, dict):
            return Err(TemplateError(
                f"Template metadata in {manifest} must be a JSON object",
                TemplateErrorCode.TEMPLATE_INVALID,
                {"path": str(manifest)},
            ))

        merged = {**defaults, **{key: value for key, value in raw.items() if value is not None}}
        validation = self.validate(merged)
        if not validation.valid:
            return Err(TemplateError(
                f"Invalid template metadata: {', '.join(validation.errors or [])}",
                TemplateErrorCode.TEMPLATE_INVALID,
                {"path": str(manifest), "errors": validation.errors or []},
            ))

        return Ok(TemplateMetadata.model_validate(merged))

    def validate(self, metadata: Mapping[str, Any] | TemplateMetadata) -> ValidationResult:
        """Validate manifest data and collect human-readable errors and warnings.

        A version that is not semver-shaped only produces a warning.
        """
        if isinstance(metadata, TemplateMetadata):
            raw: Mapping[str, Any] = metadata.model_dump(by_alias=True, exclude_none=True)
        else:
            raw = metadata

        errors: list[str] = []
        warnings: list[str] = []

        try:
            TemplateMetadata.model_validate(dict(raw))
        except ValidationError as exc:
            errors.extend(_format_validation_errors(exc))

        version = raw.get("version")
        if isinstance(version, str) and not _SEMVER_PATTERN.match(version):
            warnings.append(f'Template version "{version}" is not a valid semver')

        return ValidationResult(
            valid=not errors,
            errors=errors or None,
            warnings=warnings or None,
        )

    def save(self, template_path: str | Path, metadata: TemplateMetadata) -> Result[Path]:
        """Write *metadata* to ``<template_path>/template.json`` in canonical key order."""
        validation = self.validate(metadata)
        if not validation.valid:
            return Err(TemplateError(
                f"Invalid metadata: {', '.join(validation.errors or [])}",
                TemplateErrorCode.TEMPLATE_INVALID,
                {"errors": validation.errors or []},
            ))

        data = metadata.model_dump(mode="json", by_alias=True, exclude_none=True)
        ordered = {key: data.pop(key) for key in _KEY_ORDER if key in data}
        ordered.update(data)

        try:
            path = write_json_file(ordered, Path(template_path) / MANIFEST_FILENAME)
        except OSError as exc:
            return Err(TemplateError(
                f"Failed to save template metadata: {exc}",
                TemplateErrorCode.TEMPLATE_INVALID,
                {"path": str(template_path)},
            ))
        return Ok(path)

    def create(
        self,
        template_path: str | Path,
        *,
        name: str | None = None,
        description: str | None = None,
        author: str | None = None,
        tags: list[str] | None = None,
    ) -> Result[TemplateMetadata]:
        """Create a fresh manifest for an existing template directory."""
        base_name = Path(template_path).name or "template"
        metadata = TemplateMetadata(
            name=name or base_name,
            description=description or f"Template for {base_name}",
            version=DEFAULT_VERSION,
            author=author,
            tags=tags,
            variables=[],
        )
        saved = self.save(template_path, metadata)
        if not saved.success:
            return saved
        return Ok(metadata)


def _format_validation_errors(exc: ValidationError) -> list[str]:
    messages: list[str] = []
    for error in exc.errors():
        location = ".".join(str(part) for part in error["loc"])
        message = error["msg"].removeprefix("Value error, ")
        messages.append(f"{location}: {message}" if location else message)
    return messages
