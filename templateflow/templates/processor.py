"""Jinja2 rendering of staged templates into file operations.

Provides the ``TemplateProcessor`` class, the pipeline's RENDER collaborator.
It walks a staged template in sorted order and plans one ``FileOperation``
per file without touching the output directory.  ``apply_operations`` writes
a plan to disk afterwards.

Variables are written between the configured delimiters (``<% name %>`` by
default) and comments between ``<%# ... #%>``.  Jinja2 block tags keep their
usual ``{% ... %}`` form.  File names are rendered too, and a trailing
template extension (``.template``, ``.eta``) is dropped::

    src/<% project_name %>.ts.template  ->  src/my-app.ts
"""

from __future__ import annotations

import asyncio
import re
import shutil
from datetime import date
from pathlib import Path, PurePosixPath
from typing import Any, Iterable

from jinja2 import Environment, StrictUndefined, TemplateError as JinjaTemplateError
from jinja2 import Undefined

from templateflow.config import DEFAULT_PIPELINE_CONFIG, PipelineConfig
from templateflow.models import FileOperation, ProcessOutput, TemplateVariable
from templateflow.result import Err, Ok, Result, TemplateError, TemplateErrorCode
from templateflow.templates.cache import CACHE_META_FILENAME
from templateflow.templates.metadata import MANIFEST_FILENAME, TemplateMetadataManager
from templateflow.utils import is_binary_file, is_text_file, matches_any, print_warning

_ALWAYS_SKIPPED: frozenset[str] = frozenset({MANIFEST_FILENAME, CACHE_META_FILENAME})


# ---------------------------------------------------------------------------
# Jinja2 custom filters
# ---------------------------------------------------------------------------

def _words(value: Any) -> list[str]:
    text = re.sub(r"([a-z0-9])([A-Z])", r"\1 \2", str(value))
    text = re.sub(r"([A-Z]+)([A-Z][a-z])", r"\1 \2", text)
    return [word for word in re.split(r"[^A-Za-z0-9]+", text) if word]


def kebab_case(value: Any) -> str:
    """``MyProject`` / ``my_project`` -> ``my-project``."""
    return "-".join(word.lower() for word in _words(value))


def snake_case(value: Any) -> str:
    """``MyProject`` / ``my-project`` -> ``my_project``."""
    return "_".join(word.lower() for word in _words(value))


def screaming_snake_case(value: Any) -> str:
    return snake_case(value).upper()


def pascal_case(value: Any) -> str:
    """``my-project`` -> ``MyProject``."""
    return "".join(word[:1].upper() + word[1:].lower() for word in _words(value))


def camel_case(value: Any) -> str:
    """``my-project`` -> ``myProject``."""
    pascal = pascal_case(value)
    return pascal[:1].lower() + pascal[1:]


# ---------------------------------------------------------------------------
# Context helpers
# ---------------------------------------------------------------------------


def build_render_context(context: dict[str, Any] | None) -> dict[str, Any]:
    """Flatten ``context["variables"]`` into the top level.

    Entries in ``variables`` win over top-level keys of the same name.
    """
    context = dict(context or {})
    variables = context.get("variables")
    if isinstance(variables, dict):
        return {**context, **variables}
    return context


def validate_context(context: dict[str, Any] | None, required: Iterable[str]) -> list[str]:
    """Names from *required* that are missing or empty in *context*."""
    flat = build_render_context(context)
    return [name for name in required if flat.get(name) in (None, "")]


def apply_variable_defaults(
    context: dict[str, Any] | None, variables: Iterable[TemplateVariable],
) -> dict[str, Any]:
    """Copy of *context* with declared defaults filled in for missing values."""
    context = dict(context or {})
    supplied = dict(context.get("variables") or {})
    flat = build_render_context(context)
    for variable in variables:
        if flat.get(variable.name) in (None, "") and variable.default is not None:
            supplied[variable.name] = variable.default
    context["variables"] = supplied
    return context


def check_variables(context: dict[str, Any] | None, variables: Iterable[TemplateVariable]) -> list[str]:
    """Problems with *context* against the manifest's declared variables."""
    variables = list(variables)
    required = [v.name for v in variables if v.required]
    problems = [f"Missing required variable '{name}'" for name in validate_context(context, required)]

    flat = build_render_context(context)
    for variable in variables:
        value = flat.get(variable.name)
        if value in (None, ""):
            continue
        if variable.pattern and not re.search(variable.pattern, str(value)):
            problems.append(f"Variable '{variable.name}' does not match pattern {variable.pattern}: {value!r}")
        if variable.options and str(value) not in variable.options:
            problems.append(f"Variable '{variable.name}' must be one of {', '.join(variable.options)}: {value!r}")
    return problems


# ---------------------------------------------------------------------------
# TemplateProcessor
# ---------------------------------------------------------------------------


class TemplateProcessor:
    """Plans the files a staged template produces.

    Args:
        config: Supplies the variable delimiters, template extensions and
            ignore patterns.
        strict: Raise on undefined variables instead of rendering them empty.
        metadata_manager: Loads the staged ``template.json`` whose declared
            variables supply defaults and constraints.
    """

    def __init__(
        self,
        config: PipelineConfig | None = None,
        *,
        strict: bool = False,
        metadata_manager: TemplateMetadataManager | None = None,
    ) -> None:
        self.config = (config or DEFAULT_PIPELINE_CONFIG).model_copy(deep=True)
        self.metadata_manager = metadata_manager or TemplateMetadataManager()
        delimiters = self.config.variable_delimiters
        self.env = Environment(
            variable_start_string=delimiters.start,
            variable_end_string=delimiters.end,
            comment_start_string=delimiters.start + "#",
            comment_end_string="#" + delimiters.end,
            keep_trailing_newline=True,
            undefined=StrictUndefined if strict else Undefined,
            autoescape=False,
        )
        self.env.filters["kebab_case"] = kebab_case
        self.env.filters["camel_case"] = camel_case
        self.env.filters["pascal_case"] = pascal_case
        self.env.filters["snake_case"] = snake_case
        self.env.filters["screaming_snake_case"] = screaming_snake_case
        today = date.today()
        self.env.globals["current_year"] = today.year
        self.env.globals["current_date"] = today.isoformat()

    # -- Rendering ---------------------------------------------------------

    def render_string(self, template_string: str, context: dict[str, Any]) -> str:
        return self.env.from_string(template_string).render(**context)

    def _is_template_file(self, name: str) -> bool:
        return any(name.endswith(ext) for ext in self.config.template_extensions)

    def _target_name(self, rel: str, context: dict[str, Any]) -> str:
        for ext in self.config.template_extensions:
            if rel.endswith(ext):
                rel = rel[: -len(ext)]
                break
        if self.config.variable_delimiters.start in rel:
            rel = self.render_string(rel, context)
        return rel

    def _safe_target(self, rel: str) -> str:
        target = PurePosixPath(rel)
        if target.is_absolute() or ".." in target.parts or not target.parts:
            raise TemplateError(
                f"Rendered file name escapes the output directory: {rel!r}",
                TemplateErrorCode.TEMPLATE_RENDER_FAILED,
                {"target": rel},
            )
        return target.as_posix()

    def _iter_files(self, root: Path) -> list[str]:
        files: list[str] = []
        for path in sorted(root.rglob("*")):
            if not path.is_file():
                continue
            rel = path.relative_to(root).as_posix()
            if rel in _ALWAYS_SKIPPED or matches_any(rel, self.config.ignore_patterns):
                continue
            files.append(rel)
        return files

    def _plan(self, root: Path, context: dict[str, Any]) -> list[FileOperation]:
        operations: list[FileOperation] = []
        start = self.config.variable_delimiters.start

        for rel in self._iter_files(root):
            target = self._safe_target(self._target_name(rel, context))
            path = root / rel

            text: str | None = None
            if not is_binary_file(path) and (self._is_template_file(rel) or is_text_file(path)):
                try:
                    text = path.read_text(encoding="utf-8")
                except UnicodeDecodeError:
                    text = None

            if text is None or not (self._is_template_file(rel) or start in text):
                operations.append(FileOperation(type="copy", target=target, source=rel))
                continue

            try:
                content = self.render_string(text, context)
            except JinjaTemplateError as exc:
                print_warning(f"Failed to render {rel}, copying it unchanged: {exc}")
                content = text
            operations.append(FileOperation(type="create", target=target, content=content))

        return operations

    async def process(
        self,
        template_path: str | Path,
        output_dir: str | Path,
        context: dict[str, Any] | None = None,
    ) -> Result[ProcessOutput]:
        """Plan the operations that scaffold *template_path* into *output_dir*.

        Nothing is written.  Operation targets are relative to *output_dir*
        and listed in sorted template order.  Variables declared in the
        template's manifest fill in missing context values from their
        defaults; a missing required value or one that breaks a declared
        ``pattern`` or ``options`` list fails with ``TEMPLATE_RENDER_FAILED``.
        """
        root = Path(template_path)
        manifest = await asyncio.to_thread(self.metadata_manager.load, root)
        if not manifest.success:
            return manifest
        declared = manifest.value.variables or []
        context = apply_variable_defaults(context, declared)
        problems = check_variables(context, declared)
        if problems:
            return Err(TemplateError(
                "Invalid template variables: " + "; ".join(problems),
                TemplateErrorCode.TEMPLATE_RENDER_FAILED,
                {"path": str(root), "problems": problems},
            ))

        render_context = build_render_context(context)
        render_context.setdefault("output_dir", str(output_dir))
        try:
            operations = await asyncio.to_thread(self._plan, root, render_context)
        except TemplateError as exc:
            return Err(exc)
        except (OSError, JinjaTemplateError) as exc:
            return Err(TemplateError(
                f"Failed to process template {root}: {exc}",
                TemplateErrorCode.TEMPLATE_RENDER_FAILED,
                {"path": str(root)},
            ))
        return Ok(ProcessOutput(operations=operations))


# ---------------------------------------------------------------------------
# Writing
# ---------------------------------------------------------------------------


def _write_file(path: Path, content: str) -> None:
    """Synchronous helper to write a file, creating parent dirs as needed."""
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content, encoding="utf-8")


def _apply_sync(operations: list[FileOperation], template_root: Path, out_base: Path) -> list[Path]:
    written: list[Path] = []
    resolved_base = out_base.resolve()
    for operation in operations:
        destination = out_base / operation.target
        if not destination.resolve().is_relative_to(resolved_base):
            raise TemplateError(
                f"Refusing to write outside the output directory: {operation.target}",
                TemplateErrorCode.TEMPLATE_RENDER_FAILED,
                {"target": operation.target},
            )
        if operation.type == "create":
            _write_file(destination, operation.content or "")
        else:
            destination.parent.mkdir(parents=True, exist_ok=True)
            shutil.copy2(template_root / (operation.source or operation.target), destination)
        written.append(destination)
    return written


async def apply_operations(
    operations: list[FileOperation],
    template_path: str | Path,
    output_dir: str | Path,
) -> list[Path]:
    """Write planned *operations* under *output_dir*.

    ``copy`` sources are read relative to *template_path*.  Returns the
    written paths.
    """
    return await asyncio.to_thread(_apply_sync, list(operations), Path(template_path), Path(output_dir))
