"""Main pipeline orchestrator for templateflow.

Turns a template identifier into a rendered set of file operations by running
four stages strictly in order::

    RESOLVE -> FETCH -> VALIDATE -> RENDER

Each stage is delegated to an injected collaborator (see
``PipelineDependencies``), so the orchestrator itself only sequences the
stages, times them, reports progress and converts every failure into an
``Err`` value.  The first failing stage ends the run; later collaborators are
never called.

Usage::

    python -m templateflow.pipeline default -o ./my-app
    python -m templateflow.pipeline user/repo#main -o ./my-app --var author=Ada
    python -m templateflow.pipeline ./my-template -o ./out --dry-run --verbose
"""

from __future__ import annotations

import asyncio
import inspect
import shutil
import sys
import tempfile
import time
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Optional, Union

from pydantic import BaseModel

from templateflow.config import DEFAULT_PIPELINE_CONFIG, PipelineConfig
from templateflow.models import (
    FetchOutput,
    PipelineResult,
    PipelineStats,
    ProcessOutput,
    ResolvedTemplate,
    ValidationResult,
    parse_source,
)
from templateflow.result import Err, Ok, Result, TemplateError, TemplateErrorCode
from templateflow.templates.cache import TemplateCache, get_shared_cache, is_cacheable
from templateflow.templates.fetcher import TemplateFetcher
from templateflow.templates.processor import TemplateProcessor, apply_operations
from templateflow.templates.resolver import TemplateResolver, normalize_source
from templateflow.templates.validator import TemplateValidator
from templateflow.utils import (
    check_template_identifier,
    console,
    create_progress,
    format_duration,
    print_error,
    print_stage_header,
    print_success,
    print_summary_table,
    print_warning,
)


# ---------------------------------------------------------------------------
# Stages
# ---------------------------------------------------------------------------


class PipelineStage(str, Enum):
    RESOLVE = "resolve"
    FETCH = "fetch"
    VALIDATE = "validate"
    RENDER = "render"


# (percent at start, percent on success)
STAGE_PROGRESS: dict[PipelineStage, tuple[int, int]] = {
    PipelineStage.RESOLVE: (0, 10),
    PipelineStage.FETCH: (10, 40),
    PipelineStage.VALIDATE: (40, 50),
    PipelineStage.RENDER: (50, 100),
}

STAGE_MESSAGES: dict[PipelineStage, str] = {
    PipelineStage.RESOLVE: "Resolving template source",
    PipelineStage.FETCH: "Fetching template",
    PipelineStage.VALIDATE: "Validating template",
    PipelineStage.RENDER: "Rendering template",
}

ProgressCallback = Callable[[str, int, str], Union[None, Awaitable[None]]]


@dataclass(frozen=True)
class PipelineDependencies:
    """Collaborators a pipeline delegates its stages to.

    Any of them may be a plain function or a coroutine function.

    * ``resolve(identifier) -> TemplateSource`` (may raise)
    * ``fetch(source, staging_dir) -> Result[FetchOutput]``
    * ``validate(staged_path) -> ValidationResult``
    * ``process(staged_path, output_dir, context) -> Result[ProcessOutput]``
    * ``write(operations, staged_path, output_dir)``: optional, applies the
      planned operations while the staging directory still exists.  Never
      called on a dry run.
    """

    resolve: Callable[..., Any]
    fetch: Callable[..., Any]
    validate: Callable[..., Any]
    process: Callable[..., Any]
    write: Optional[Callable[..., Any]] = None


async def _call(func: Callable[..., Any], *args: Any) -> Any:
    value = func(*args)
    if inspect.isawaitable(value):
        value = await value
    return value


def _coerce(model: type[BaseModel], value: Any) -> Any:
    return value if isinstance(value, model) else model.model_validate(value)


def _empty_directory(path: Path) -> None:
    for child in path.iterdir():
        if child.is_dir() and not child.is_symlink():
            shutil.rmtree(child)
        else:
            child.unlink()


# ---------------------------------------------------------------------------
# TemplatePipeline
# ---------------------------------------------------------------------------


class TemplatePipeline:
    """Sequences the four template stages and aggregates their statistics.

    Args:
        dependencies: Stage collaborators, as ``PipelineDependencies`` or a
            mapping with the same keys.
        config: Fully merged configuration.  The pipeline keeps a private
            copy.
        cache: Cache for remote templates.  When omitted and caching is
            enabled, the process-wide cache for ``config.cache_dir`` is used.
    """

    def __init__(
        self,
        dependencies: PipelineDependencies | Mapping[str, Any],
        config: PipelineConfig | None = None,
        *,
        cache: TemplateCache | None = None,
    ) -> None:
        if not isinstance(dependencies, PipelineDependencies):
            dependencies = PipelineDependencies(**dependencies)
        self.dependencies = dependencies
        self._config = (config or DEFAULT_PIPELINE_CONFIG).model_copy(deep=True)
        self._cache = cache

    # ------------------------------------------------------------------
    # Configuration
    # ------------------------------------------------------------------

    def get_config(self) -> PipelineConfig:
        """Return a copy of the current configuration."""
        return self._config.model_copy(deep=True)

    def update_config(self, partial: PipelineConfig | Mapping[str, Any]) -> None:
        """Merge *partial* into this pipeline's configuration."""
        self._config = self._config.merged(partial)

    def _cache_for(self, config: PipelineConfig) -> TemplateCache:
        if self._cache is None:
            self._cache = get_shared_cache(config.resolved_cache_dir, config.cache_ttl)
        return self._cache

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    async def execute(
        self,
        identifier: str,
        *,
        output_dir: str | Path,
        context: dict[str, Any] | None = None,
        on_progress: ProgressCallback | None = None,
    ) -> Result[PipelineResult]:
        """Run every stage for *identifier*.

        Never raises for stage failures: the outcome is ``Ok(PipelineResult)``
        or ``Err(TemplateError)``.
        """
        config = self.get_config()
        context = dict(context or {})

        reason = (
            check_template_identifier(identifier)
            if isinstance(identifier, str)
            else "identifier must be a string"
        )
        if reason:
            return Err(TemplateError(
                f"Invalid template identifier: {identifier!r} ({reason})",
                TemplateErrorCode.TEMPLATE_INVALID,
                {"identifier": identifier},
            ))

        timings: dict[str, float] = {}

        # -- RESOLVE -------------------------------------------------------
        resolved = await self._run_stage(
            PipelineStage.RESOLVE,
            lambda: self._resolve(identifier),
            config=config,
            timings=timings,
            on_progress=on_progress,
            failure_prefix="Failed to resolve template",
            failure_code=TemplateErrorCode.TEMPLATE_NOT_FOUND,
        )
        if not resolved.success:
            return resolved
        source = resolved.value

        try:
            staging_dir = await asyncio.to_thread(tempfile.mkdtemp, prefix="templateflow-")
        except OSError as exc:
            return Err(TemplateError(
                f"Failed to create staging directory: {exc}",
                TemplateErrorCode.TEMPLATE_FETCH_FAILED,
                {"stage": PipelineStage.FETCH.value, "cause": type(exc).__name__},
            ))
        try:
            # -- FETCH -----------------------------------------------------
            fetched = await self._run_stage(
                PipelineStage.FETCH,
                lambda: self._fetch(source, staging_dir, config),
                config=config,
                timings=timings,
                on_progress=on_progress,
            )
            if not fetched.success:
                return fetched
            fetch_output, cache_hit = fetched.value

            # -- VALIDATE --------------------------------------------------
            validated = await self._run_stage(
                PipelineStage.VALIDATE,
                lambda: self._validate(fetch_output.path, config),
                config=config,
                timings=timings,
                on_progress=on_progress,
            )
            if not validated.success:
                return validated

            # -- RENDER ----------------------------------------------------
            rendered = await self._run_stage(
                PipelineStage.RENDER,
                lambda: self._render(fetch_output.path, output_dir, context, config),
                config=config,
                timings=timings,
                on_progress=on_progress,
            )
            if not rendered.success:
                return rendered
            operations = rendered.value.operations
        finally:
            await asyncio.to_thread(shutil.rmtree, staging_dir, ignore_errors=True)

        stats = PipelineStats(
            total_time_ms=sum(timings.values()),
            stage_timings=timings,
            files_processed=len(operations),
            cache_hit=cache_hit,
        )
        result = PipelineResult(
            template=ResolvedTemplate(
                metadata=fetch_output.metadata,
                path=fetch_output.path,
                source=source,
            ),
            operations=[] if config.dry_run else operations,
            stats=stats,
        )

        if config.verbose:
            print_success(
                f"Template '{result.template.metadata.name}' processed "
                f"{stats.files_processed} file(s) in {format_duration(stats.total_time_ms / 1000)}"
            )
        return Ok(result)

    # ------------------------------------------------------------------
    # Stage runner
    # ------------------------------------------------------------------

    async def _run_stage(
        self,
        stage: PipelineStage,
        action: Callable[[], Awaitable[Result[Any]]],
        *,
        config: PipelineConfig,
        timings: dict[str, float],
        on_progress: ProgressCallback | None,
        failure_prefix: str | None = None,
        failure_code: TemplateErrorCode = TemplateErrorCode.TEMPLATE_PARSE_ERROR,
    ) -> Result[Any]:
        """Time *action*, report progress, and turn any exception into ``Err``."""
        start_pct, end_pct = STAGE_PROGRESS[stage]
        if config.verbose:
            print_stage_header(stage.value)

        started = time.monotonic()
        try:
            await self._notify(on_progress, stage, start_pct, f"{STAGE_MESSAGES[stage]}...")
            result = await action()
            if result.success:
                await self._notify(on_progress, stage, end_pct, f"{STAGE_MESSAGES[stage]} complete")
        except Exception as exc:
            prefix = failure_prefix or f"Pipeline failed at {stage.value} stage"
            result = Err(TemplateError(
                f"{prefix}: {exc}",
                failure_code,
                {"stage": stage.value, "cause": type(exc).__name__},
            ))
        finally:
            timings[stage.value] = (time.monotonic() - started) * 1000

        if config.verbose:
            elapsed = format_duration(timings[stage.value] / 1000)
            if result.success:
                print_success(f"{stage.value} completed in {elapsed}")
            else:
                print_error(f"{stage.value} failed after {elapsed}: {result.error}")
        return result

    @staticmethod
    async def _notify(
        on_progress: ProgressCallback | None, stage: PipelineStage, percent: int, message: str,
    ) -> None:
        if on_progress is not None:
            await _call(on_progress, stage.value, percent, message)

    # ------------------------------------------------------------------
    # Stage bodies
    # ------------------------------------------------------------------

    async def _resolve(self, identifier: str) -> Result[Any]:
        source = await _call(self.dependencies.resolve, identifier)
        if isinstance(source, Mapping):
            source = parse_source(dict(source))
        return Ok(normalize_source(source))

    async def _fetch(self, source: Any, staging_dir: str, config: PipelineConfig) -> Result[Any]:
        use_cache = config.cache_enabled and is_cacheable(source)

        if use_cache:
            cache = self._cache_for(config)
            entry = await cache.get(source, ttl=config.cache_ttl)
            if entry is not None:
                if await cache.restore(entry, staging_dir) is not None:
                    if config.verbose:
                        print_success(f"Using cached template for {source.location}")
                    return Ok((FetchOutput(path=staging_dir, metadata=entry.metadata), True))
                # a failed restore may leave a partial tree behind
                await asyncio.to_thread(_empty_directory, Path(staging_dir))

        fetched = await _call(self.dependencies.fetch, source, staging_dir)
        if not fetched.success:
            return fetched
        output = _coerce(FetchOutput, fetched.value)

        if use_cache:
            await self._cache_for(config).set(source, output.path, output.metadata)
        return Ok((output, False))

    async def _validate(self, staged_path: str, config: PipelineConfig) -> Result[ValidationResult]:
        validation = _coerce(ValidationResult, await _call(self.dependencies.validate, staged_path))
        if config.verbose:
            for warning in validation.warnings or []:
                print_warning(warning)
        if not validation.valid:
            return Err(TemplateError(
                "Template validation failed: " + ", ".join(validation.errors or []),
                TemplateErrorCode.TEMPLATE_INVALID,
                {"errors": list(validation.errors or [])},
            ))
        return Ok(validation)

    async def _render(
        self,
        staged_path: str,
        output_dir: str | Path,
        context: dict[str, Any],
        config: PipelineConfig,
    ) -> Result[ProcessOutput]:
        processed = await _call(self.dependencies.process, staged_path, str(output_dir), context)
        if not processed.success:
            return processed
        output = _coerce(ProcessOutput, processed.value)

        if not config.dry_run and self.dependencies.write is not None:
            written = await _call(self.dependencies.write, output.operations, staged_path, str(output_dir))
            if isinstance(written, Err):
                return written
        return Ok(output)


# ---------------------------------------------------------------------------
# Factories
# ---------------------------------------------------------------------------


def create_pipeline(
    dependencies: PipelineDependencies | Mapping[str, Any],
    config: PipelineConfig | Mapping[str, Any] | None = None,
    *,
    cache: TemplateCache | None = None,
) -> TemplatePipeline:
    """Build a pipeline whose config is *config* laid over the defaults."""
    return TemplatePipeline(dependencies, DEFAULT_PIPELINE_CONFIG.merged(config), cache=cache)


def create_default_pipeline(
    config: PipelineConfig | Mapping[str, Any] | None = None,
    *,
    cache: TemplateCache | None = None,
) -> TemplatePipeline:
    """Pipeline wired to the bundled resolver, fetcher, validator and processor.

    The validator and processor are configured from *config* once, at
    construction; later ``update_config`` calls do not change their
    delimiters or ignore patterns.
    """
    merged = DEFAULT_PIPELINE_CONFIG.merged(config)
    resolver = TemplateResolver()
    fetcher = TemplateFetcher(resolver)
    validator = TemplateValidator(merged.variable_delimiters, resolver=resolver)
    processor = TemplateProcessor(merged)

    dependencies = PipelineDependencies(
        resolve=resolver.resolve,
        fetch=fetcher.fetch,
        validate=validator.validate_template,
        process=processor.process,
        write=apply_operations,
    )
    return TemplatePipeline(dependencies, merged, cache=cache)


# ---------------------------------------------------------------------------
# CLI entry point
# ---------------------------------------------------------------------------


def _parse_vars(pairs: list[str]) -> dict[str, str]:
    variables: dict[str, str] = {}
    for pair in pairs:
        key, sep, value = pair.partition("=")
        if not sep or not key.strip():
            raise ValueError(f"Invalid --var value (expected KEY=VALUE): {pair}")
        variables[key.strip()] = value
    return variables


def main() -> None:
    """CLI entry point for ``python -m templateflow.pipeline``."""
    import argparse

    parser = argparse.ArgumentParser(
        description="templateflow -- scaffold a project from a template",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=(
            "Examples:\n"
            "  templateflow default -o ./my-app\n"
            "  templateflow user/repo/templates/cli#v2 -o ./my-cli --var author=Ada\n"
            "  templateflow ./my-template -o ./out --dry-run\n"
        ),
    )
    parser.add_argument("template", nargs="?", help="Template identifier")
    parser.add_argument(
        "--output", "-o",
        default=".",
        help="Output directory (default: current directory)",
    )
    parser.add_argument(
        "--var",
        action="append",
        default=[],
        metavar="KEY=VALUE",
        help="Template variable (repeatable)",
    )
    parser.add_argument("--dry-run", action="store_true", help="Plan files without writing them")
    parser.add_argument("--no-cache", action="store_true", help="Bypass the template cache")
    parser.add_argument("--verbose", "-v", action="store_true", help="Print stage details")
    parser.add_argument("--list", action="store_true", help="List built-in templates and exit")

    args = parser.parse_args()

    if args.list:
        for name in TemplateResolver().get_builtin_templates():
            console.print(name)
        return

    if not args.template:
        parser.error("a template identifier is required")

    try:
        variables = _parse_vars(args.var)
    except ValueError as exc:
        console.print(f"[bold red]Error:[/bold red] {exc}")
        sys.exit(1)

    config = PipelineConfig.from_env()
    overrides: dict[str, Any] = {}
    if args.dry_run:
        overrides["dry_run"] = True
    if args.no_cache:
        overrides["cache_enabled"] = False
    if args.verbose:
        overrides["verbose"] = True
    config = config.merged(overrides)

    output_dir = Path(args.output).expanduser().resolve()
    context = {"variables": {"project_name": output_dir.name, **variables}}
    pipeline = create_default_pipeline(config)

    with create_progress() as progress:
        task = progress.add_task("Starting", total=100)

        def on_progress(stage: str, percent: int, message: str) -> None:
            progress.update(task, completed=percent, description=message)

        result = asyncio.run(
            pipeline.execute(args.template, output_dir=output_dir, context=context, on_progress=on_progress)
        )

    if not result.success:
        print_error(f"Scaffolding failed: {result.error}")
        sys.exit(1)

    value = result.value
    print_summary_table(
        {
            "Template": f"{value.template.metadata.name} {value.template.metadata.version}",
            "Source": value.template.source.type if value.template.source else "-",
            "Output": str(output_dir),
            "Files": str(value.stats.files_processed),
            "Cache hit": "yes" if value.stats.cache_hit else "no",
            "Duration": format_duration(value.stats.total_time_ms / 1000),
        },
        title="Dry run" if config.dry_run else "Scaffold",
    )
    if config.dry_run:
        print_warning("Dry run: no files were written.")
    else:
        print_success("Project scaffolded successfully!")


if __name__ == "__main__":
    main()
