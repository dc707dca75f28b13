"""Structural checks for a staged template.

``TemplateValidator.validate_template`` is the pipeline's VALIDATE
collaborator.  Hard problems (missing directory, broken manifest, unbalanced
delimiters) are errors; everything else is reported as a warning and never
blocks rendering.
"""

from __future__ import annotations

import asyncio
import re
from pathlib import Path
from typing import Any

from templateflow.config import VariableDelimiters
from templateflow.models import TemplateMetadata, ValidationResult
from templateflow.templates.metadata import MANIFEST_FILENAME, TemplateMetadataManager
from templateflow.templates.resolver import TemplateResolver
from templateflow.utils import is_binary_file, is_text_file, load_json

MAX_FILE_SIZE = 10 * 1024 * 1024

SUSPICIOUS_EXTENSIONS: frozenset[str] = frozenset({".exe", ".dll", ".so", ".dylib", ".bin"})

PROBLEMATIC_ENTRIES: tuple[str, ...] = (
    "node_modules", ".git", "dist", "lib", "build", ".env", ".env.local",
)

PLACEHOLDER_TOKENS: tuple[str, ...] = (
    "YOUR_NAME", "YOUR_EMAIL", "PROJECT_NAME", "TODO:", "FIXME:", "XXX:",
)

_SKIPPED_DIRS: frozenset[str] = frozenset({"node_modules", ".git"})


class TemplateValidator:
    """Validates template directories and sources.

    Args:
        delimiters: Variable delimiters the template files are written with.
        metadata_manager: Used to load and check ``template.json``.
        resolver: Used by :meth:`validate_source`.
    """

    def __init__(
        self,
        delimiters: VariableDelimiters | None = None,
        metadata_manager: TemplateMetadataManager | None = None,
        resolver: TemplateResolver | None = None,
    ) -> None:
        self.delimiters = delimiters or VariableDelimiters()
        self.metadata_manager = metadata_manager or TemplateMetadataManager()
        self.resolver = resolver or TemplateResolver()

    async def validate_template(self, template_path: str | Path) -> ValidationResult:
        """Run every check against *template_path*."""
        return await asyncio.to_thread(self._validate_sync, Path(template_path))

    async def validate_source(self, source: Any) -> ValidationResult:
        return await self.resolver.validate(source)

    # ------------------------------------------------------------------
    # Checks
    # ------------------------------------------------------------------

    def _validate_sync(self, root: Path) -> ValidationResult:
        errors: list[str] = []
        warnings: list[str] = []

        if not root.exists():
            return ValidationResult(valid=False, errors=[f"Template directory does not exist: {root}"])
        if not root.is_dir():
            return ValidationResult(valid=False, errors=[f"Template path is not a directory: {root}"])

        metadata = self._check_metadata(root, errors, warnings)
        self._check_structure(root, warnings)
        contents = self._check_files(root, errors, warnings)

        if metadata is not None:
            self._check_variable_usage(metadata, contents, warnings)
            self._check_dependencies(root, metadata, warnings)

        return ValidationResult(
            valid=not errors,
            errors=errors or None,
            warnings=warnings or None,
        )

    def _check_metadata(
        self, root: Path, errors: list[str], warnings: list[str],
    ) -> TemplateMetadata | None:
        if not (root / MANIFEST_FILENAME).is_file():
            warnings.append(f"No {MANIFEST_FILENAME} found, default metadata will be used")
            return None

        loaded = self.metadata_manager.load(root)
        if not loaded.success:
            errors.append(str(loaded.error))
            return None

        check = self.metadata_manager.validate(loaded.value)
        warnings.extend(check.warnings or [])
        return loaded.value

    def _check_structure(self, root: Path, warnings: list[str]) -> None:
        entries = {entry.name for entry in root.iterdir()}
        if not entries - {MANIFEST_FILENAME}:
            warnings.append("Template directory is empty")
            return

        if not any(name.lower().startswith("readme") for name in entries):
            warnings.append("Template has no README file")
        if ".gitignore" not in entries and ".gitignore.template" not in entries:
            warnings.append("Template has no .gitignore file")

        for name in PROBLEMATIC_ENTRIES:
            if name in entries:
                warnings.append(f"Template contains '{name}', which is usually generated and should not be shipped")

    def _check_files(self, root: Path, errors: list[str], warnings: list[str]) -> dict[str, str]:
        """Per-file checks.  Returns the decoded text of every text file."""
        contents: dict[str, str] = {}
        for path in sorted(root.rglob("*")):
            rel_parts = path.relative_to(root).parts
            if any(part in _SKIPPED_DIRS for part in rel_parts) or not path.is_file():
                continue
            rel = "/".join(rel_parts)

            size = path.stat().st_size
            if size > MAX_FILE_SIZE:
                warnings.append(f"Large file ({size // (1024 * 1024)}MB): {rel}")
                continue
            if path.suffix.lower() in SUSPICIOUS_EXTENSIONS:
                warnings.append(f"Suspicious binary file: {rel}")
                continue
            if is_binary_file(path) or rel == MANIFEST_FILENAME:
                continue

            try:
                text = path.read_text(encoding="utf-8")
            except (UnicodeDecodeError, OSError):
                if is_text_file(path):
                    warnings.append(f"Could not read file as UTF-8 text: {rel}")
                continue

            contents[rel] = text
            self._check_delimiters(rel, text, errors)
            for token in PLACEHOLDER_TOKENS:
                if token in text:
                    warnings.append(f"Placeholder '{token}' found in {rel}")
        return contents

    def _check_delimiters(self, rel: str, text: str, errors: list[str]) -> None:
        start, end = self.delimiters.start, self.delimiters.end
        depth = 0
        i = 0
        while i < len(text):
            if text.startswith(start, i):
                if depth:
                    errors.append(f"Nested template delimiter '{start}' in {rel}")
                    return
                depth += 1
                i += len(start)
            elif text.startswith(end, i):
                if not depth:
                    errors.append(f"Unmatched closing delimiter '{end}' in {rel}")
                    return
                depth -= 1
                i += len(end)
            else:
                i += 1
        if depth:
            errors.append(f"Unclosed template delimiter '{start}' in {rel}")

    def _check_variable_usage(
        self, metadata: TemplateMetadata, contents: dict[str, str], warnings: list[str],
    ) -> None:
        if not metadata.variables:
            return
        pattern = re.compile(re.escape(self.delimiters.start) + r"-?\s*([A-Za-z_]\w*)")
        used: set[str] = set()
        for rel, text in contents.items():
            for chunk in (rel, text):
                used.update(pattern.findall(chunk))
        for variable in metadata.variables:
            if variable.name not in used:
                warnings.append(f"Variable '{variable.name}' is declared but never used")

    def _check_dependencies(self, root: Path, metadata: TemplateMetadata, warnings: list[str]) -> None:
        if not metadata.dependencies:
            return
        package_json = next(
            (root / name for name in ("package.json", "package.json.template", "package.json.eta")
             if (root / name).is_file()),
            None,
        )
        if package_json is None:
            warnings.append("Template declares dependencies but has no package.json")
            return
        try:
            data = load_json(package_json)
        except (OSError, ValueError):
            # not valid JSON until rendered
            return
        declared: set[str] = set()
        for section in ("dependencies", "devDependencies", "peerDependencies"):
            if isinstance(data.get(section), dict):
                declared.update(data[section])
        for dependency in metadata.dependencies:
            if dependency not in declared:
                warnings.append(f"Dependency '{dependency}' is not listed in {package_json.name}")
