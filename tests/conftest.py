"""Shared pytest fixtures for the templateflow test suite.

Provides reusable fixtures for:
- An isolated cache directory (``XDG_CACHE_HOME`` points into tmp_path)
- A small on-disk template with a ``template.json`` manifest
- Mocked pipeline collaborators (resolve / fetch / validate / process)
- In-memory tar.gz and zip archives for fetcher tests
"""

from __future__ import annotations

import io
import json
import tarfile
import zipfile
from pathlib import Path
from typing import Any
from unittest.mock import AsyncMock, MagicMock

import pytest

from templateflow.models import (
    FetchOutput,
    FileOperation,
    GitHubSource,
    ProcessOutput,
    TemplateMetadata,
    ValidationResult,
)
from templateflow.pipeline import PipelineDependencies
from templateflow.result import Ok


# ---------------------------------------------------------------------------
# Environment isolation
# ---------------------------------------------------------------------------

@pytest.fixture(autouse=True)
def isolated_cache_home(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    """Keep every test's template cache inside its own tmp_path."""
    cache_home = tmp_path / "xdg-cache"
    monkeypatch.setenv("XDG_CACHE_HOME", str(cache_home))
    for name in (
        "TEMPLATEFLOW_CACHE_ENABLED", "TEMPLATEFLOW_CACHE_TTL", "TEMPLATEFLOW_CACHE_DIR",
        "TEMPLATEFLOW_VERBOSE", "TEMPLATEFLOW_DRY_RUN", "TEMPLATEFLOW_TEMPLATE_EXTENSIONS",
        "TEMPLATEFLOW_IGNORE_PATTERNS", "TEMPLATEFLOW_DELIMITERS",
    ):
        monkeypatch.delenv(name, raising=False)
    return cache_home


# ---------------------------------------------------------------------------
# Templates on disk
# ---------------------------------------------------------------------------

SAMPLE_MANIFEST: dict[str, Any] = {
    "name": "sample",
    "description": "A sample template",
    "version": "1.2.3",
    "variables": [
        {"name": "project_name", "description": "Project name", "type": "string", "required": True},
    ],
}


@pytest.fixture
def sample_template(tmp_path: Path) -> Path:
    """A small template tree exercising rendering, copying and ignores."""
    root = tmp_path / "sample-template"
    (root / "src").mkdir(parents=True)
    (root / "node_modules" / "dep").mkdir(parents=True)
    (root / "template.json").write_text(json.dumps(SAMPLE_MANIFEST, indent=2), encoding="utf-8")
    (root / "README.md.template").write_text("# <% project_name %>\n", encoding="utf-8")
    (root / ".gitignore").write_text("node_modules/\n", encoding="utf-8")
    (root / "src" / "<% project_name %>.ts.template").write_text(
        'export const name = "<% project_name | pascal_case %>";\n', encoding="utf-8",
    )
    (root / "src" / "plain.ts").write_text("export const answer = 42;\n", encoding="utf-8")
    (root / "logo.png").write_bytes(b"\x89PNG\r\n\x1a\n\x00\x00")
    (root / "node_modules" / "dep" / "index.js").write_text("module.exports = {};\n", encoding="utf-8")
    return root


@pytest.fixture
def sample_metadata() -> TemplateMetadata:
    return TemplateMetadata.model_validate(SAMPLE_MANIFEST)


# ---------------------------------------------------------------------------
# Pipeline collaborators
# ---------------------------------------------------------------------------

@pytest.fixture
def mock_dependencies(sample_metadata: TemplateMetadata) -> PipelineDependencies:
    """Collaborators that succeed with three planned operations."""
    operations = [
        FileOperation(type="create", target="README.md", content="# demo\n"),
        FileOperation(type="create", target="src/index.ts", content="export {};\n"),
        FileOperation(type="copy", target="logo.png", source="logo.png"),
    ]

    async def fetch(source: Any, staging_dir: str) -> Ok[FetchOutput]:
        return Ok(FetchOutput(path=staging_dir, metadata=sample_metadata))

    return PipelineDependencies(
        resolve=MagicMock(return_value=GitHubSource(location="user/repo")),
        fetch=AsyncMock(side_effect=fetch),
        validate=AsyncMock(return_value=ValidationResult(valid=True)),
        process=AsyncMock(return_value=Ok(ProcessOutput(operations=operations))),
    )


# ---------------------------------------------------------------------------
# Archives
# ---------------------------------------------------------------------------

def build_tar_gz(files: dict[str, str | bytes]) -> bytes:
    """Build a gzip-compressed tarball in memory from ``{member_name: content}``."""
    buffer = io.BytesIO()
    with tarfile.open(fileobj=buffer, mode="w:gz") as tf:
        for name, content in files.items():
            data = content.encode("utf-8") if isinstance(content, str) else content
            info = tarfile.TarInfo(name)
            info.size = len(data)
            info.mode = 0o644
            tf.addfile(info, io.BytesIO(data))
    return buffer.getvalue()


def build_zip(files: dict[str, str | bytes]) -> bytes:
    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, "w") as zf:
        for name, content in files.items():
            zf.writestr(name, content)
    return buffer.getvalue()


@pytest.fixture
def repo_tarball() -> bytes:
    """A GitHub-style tarball: everything under one top-level folder."""
    return build_tar_gz({
        "repo-main/template.json": json.dumps({"name": "from-github", "version": "2.0.0"}),
        "repo-main/README.md": "# root\n",
        "repo-main/templates/cli/template.json": json.dumps({"name": "cli-sub"}),
        "repo-main/templates/cli/index.js.template": "console.log('<% project_name %>');\n",
    })


@pytest.fixture
def tar_gz_factory():
    """The ``build_tar_gz`` helper, for tests that need custom archives."""
    return build_tar_gz


@pytest.fixture
def zip_factory():
    return build_zip
