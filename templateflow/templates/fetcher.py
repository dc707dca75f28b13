"""Stage template trees from every supported source into a local directory.

The fetcher is the pipeline's FETCH collaborator: given a normalised source
and an empty staging directory it fills the directory with the template tree
and returns the parsed manifest.

Remote downloads go through ``httpx`` and are retried on transport errors and
5xx responses with ``tenacity``.  Archives (zip or tar, optionally gzip
compressed) are unpacked into a scratch directory first; members that would
land outside it are rejected.  A single top-level folder, as produced by
GitHub tarballs, is stripped before the optional ``subdir`` is selected.
"""

from __future__ import annotations

import asyncio
import shutil
import tarfile
import tempfile
import zipfile
from pathlib import Path
from typing import Any
from urllib.parse import urlparse
from urllib.request import url2pathname

import httpx
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from templateflow.models import (
    BuiltinSource,
    FetchOutput,
    GitHubSource,
    LocalSource,
    TemplateMetadata,
    UrlSource,
)
from templateflow.result import Err, Ok, Result, TemplateError, TemplateErrorCode
from templateflow.templates.metadata import TemplateMetadataManager
from templateflow.templates.resolver import (
    BUILTIN_TEMPLATE_NAMES,
    TemplateResolver,
    is_valid_github_repo,
    strip_github_prefix,
)
from templateflow.utils import print_warning

GITHUB_CODELOAD_URL = "https://codeload.github.com"

# Entries never copied out of a local template directory.
LOCAL_IGNORE_PATTERNS: tuple[str, ...] = (
    "node_modules",
    ".git",
    "dist",
    "*.log",
    ".cache-meta.json",
    ".DS_Store",
    "Thumbs.db",
    ".env",
    ".env.local",
)


class _ServerError(Exception):
    """A 5xx response worth retrying."""


def _warn_before_retry(retry_state: RetryCallState) -> None:
    outcome = retry_state.outcome
    cause = outcome.exception() if outcome is not None else None
    delay = retry_state.next_action.sleep if retry_state.next_action is not None else 0.0
    print_warning(
        f"Download attempt {retry_state.attempt_number} failed ({cause}), "
        f"retrying in {delay:.1f}s"
    )


# ---------------------------------------------------------------------------
# Filesystem helpers (run in worker threads)
# ---------------------------------------------------------------------------


def _copy_tree(source: Path, target: Path, *, filtered: bool = True) -> None:
    ignore = shutil.ignore_patterns(*LOCAL_IGNORE_PATTERNS) if filtered else None
    shutil.copytree(source, target, ignore=ignore, dirs_exist_ok=True, symlinks=True)


def _is_within(root: Path, candidate: Path) -> bool:
    return candidate.resolve().is_relative_to(root.resolve())


def _extract_archive(archive: Path, destination: Path) -> None:
    """Unpack *archive* into *destination*, refusing members that escape it."""
    if zipfile.is_zipfile(archive):
        with zipfile.ZipFile(archive) as zf:
            for name in zf.namelist():
                if name.startswith(("/", "\\")) or not _is_within(destination, destination / name):
                    raise TemplateError(
                        f"Archive entry escapes the target directory: {name}",
                        TemplateErrorCode.TEMPLATE_FETCH_FAILED,
                        {"entry": name},
                    )
            zf.extractall(destination)
        return

    if tarfile.is_tarfile(archive):
        with tarfile.open(archive) as tf:
            try:
                tf.extractall(destination, filter="data")
            except tarfile.FilterError as exc:
                raise TemplateError(
                    f"Archive entry escapes the target directory: {exc}",
                    TemplateErrorCode.TEMPLATE_FETCH_FAILED,
                ) from exc
        return

    raise TemplateError(
        f"Unsupported archive format: {archive.name}",
        TemplateErrorCode.TEMPLATE_FETCH_FAILED,
    )


def _template_root(extracted: Path, subdir: str | None) -> Path:
    """Locate the template inside an unpacked archive."""
    entries = [e for e in extracted.iterdir() if e.name not in ("__MACOSX", "pax_global_header")]
    root = entries[0] if len(entries) == 1 and entries[0].is_dir() else extracted

    if subdir:
        candidate = root / subdir.strip("/")
        if not _is_within(root, candidate) or not candidate.is_dir():
            raise TemplateError(
                f"Subdirectory not found in template archive: {subdir}",
                TemplateErrorCode.TEMPLATE_NOT_FOUND,
                {"subdir": subdir},
            )
        root = candidate
    return root


def _name_hint(source: Any) -> str | None:
    """Name for a template whose manifest omits one: the last path-like segment."""
    if isinstance(source, GitHubSource) and source.subdir:
        return source.subdir.rstrip("/").rsplit("/", 1)[-1] or None
    location = urlparse(source.location).path if isinstance(source, UrlSource) else source.location
    name = strip_github_prefix(location).rstrip("/\\").replace("\\", "/").rsplit("/", 1)[-1]
    for suffix in (".tar.gz", ".tgz", ".tar", ".zip"):
        name = name.removesuffix(suffix)
    return name or None


def _unpack_into(archive: Path, target: Path, subdir: str | None) -> None:
    with tempfile.TemporaryDirectory(prefix="templateflow-extract-") as scratch:
        scratch_path = Path(scratch)
        _extract_archive(archive, scratch_path)
        _copy_tree(_template_root(scratch_path, subdir), target)


# ---------------------------------------------------------------------------
# TemplateFetcher
# ---------------------------------------------------------------------------


class TemplateFetcher:
    """Copies or downloads a template into a staging directory.

    Args:
        resolver: Supplies the bundled template directory.
        metadata_manager: Loads ``template.json`` once the tree is staged.
        timeout: Per-request HTTP timeout in seconds.
        max_attempts: Download attempts before giving up.
        transport: Optional ``httpx`` transport (tests pass a ``MockTransport``).
    """

    def __init__(
        self,
        resolver: TemplateResolver | None = None,
        metadata_manager: TemplateMetadataManager | None = None,
        *,
        timeout: float = 60.0,
        max_attempts: int = 3,
        transport: httpx.AsyncBaseTransport | None = None,
        github_base_url: str = GITHUB_CODELOAD_URL,
    ) -> None:
        self.resolver = resolver or TemplateResolver()
        self.metadata_manager = metadata_manager or TemplateMetadataManager()
        self.timeout = timeout
        self.max_attempts = max(1, max_attempts)
        self.transport = transport
        self.github_base_url = github_base_url.rstrip("/")

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            timeout=httpx.Timeout(self.timeout, connect=10.0),
            follow_redirects=True,
            transport=self.transport,
        )

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def fetch(self, source: Any, target_dir: str | Path) -> Result[FetchOutput]:
        """Stage *source* into *target_dir* and load its manifest.

        Never raises: failures come back as ``Err(TemplateError)``.
        """
        target = Path(target_dir)
        try:
            await asyncio.to_thread(target.mkdir, parents=True, exist_ok=True)
            if isinstance(source, BuiltinSource):
                await self._fetch_builtin(source, target)
            elif isinstance(source, LocalSource):
                await self._fetch_local(source, target)
            elif isinstance(source, UrlSource):
                await self._fetch_url(source, target)
            elif isinstance(source, GitHubSource):
                await self._fetch_github(source, target)
            else:
                raise TemplateError(
                    f"Unsupported template source: {source!r}",
                    TemplateErrorCode.TEMPLATE_INVALID,
                )
        except TemplateError as exc:
            return Err(exc)
        except (OSError, httpx.HTTPError, _ServerError, tarfile.TarError, zipfile.BadZipFile) as exc:
            return Err(TemplateError(
                f"Failed to fetch template from {source.type} source {source.location!r}: {exc}",
                TemplateErrorCode.TEMPLATE_FETCH_FAILED,
                {"source": source.model_dump()},
            ))

        metadata = await self._load_metadata(target, _name_hint(source))
        return Ok(FetchOutput(path=str(target), metadata=metadata))

    # ------------------------------------------------------------------
    # Per-source strategies
    # ------------------------------------------------------------------

    async def _fetch_builtin(self, source: BuiltinSource, target: Path) -> None:
        template_dir = self.resolver.get_builtin_template_path(source.location)
        if source.location not in BUILTIN_TEMPLATE_NAMES or not template_dir.is_dir():
            raise TemplateError(
                f"Built-in template does not exist: {source.location}",
                TemplateErrorCode.TEMPLATE_NOT_FOUND,
                {"template": source.location},
            )
        await asyncio.to_thread(_copy_tree, template_dir, target, filtered=False)

    async def _fetch_local(self, source: LocalSource, target: Path) -> None:
        template_dir = Path(source.location).expanduser()
        if not template_dir.is_dir():
            raise TemplateError(
                f"Local template directory does not exist: {source.location}",
                TemplateErrorCode.TEMPLATE_NOT_FOUND,
                {"path": source.location},
            )
        await asyncio.to_thread(_copy_tree, template_dir, target)

    async def _fetch_url(self, source: UrlSource, target: Path) -> None:
        parsed = urlparse(source.location)
        if parsed.scheme.lower() == "file":
            local = Path(url2pathname(parsed.path))
            if local.is_dir():
                await asyncio.to_thread(_copy_tree, local, target)
            elif local.is_file():
                await asyncio.to_thread(_unpack_into, local, target, None)
            else:
                raise TemplateError(
                    f"Template archive not found: {source.location}",
                    TemplateErrorCode.TEMPLATE_NOT_FOUND,
                    {"url": source.location},
                )
            return

        await self._download_and_unpack(source.location, target, None)

    async def _fetch_github(self, source: GitHubSource, target: Path) -> None:
        repo = strip_github_prefix(source.location)
        if not is_valid_github_repo(repo):
            raise TemplateError(
                f"Invalid GitHub repository format: {source.location}",
                TemplateErrorCode.TEMPLATE_INVALID,
                {"repository": source.location},
            )
        url = f"{self.github_base_url}/{repo}/tar.gz/{source.ref or 'HEAD'}"
        await self._download_and_unpack(url, target, source.subdir)

    # ------------------------------------------------------------------
    # Download helpers
    # ------------------------------------------------------------------

    async def _download(self, url: str) -> bytes:
        async for attempt in AsyncRetrying(
            reraise=True,
            retry=retry_if_exception_type((httpx.TransportError, _ServerError)),
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_exponential(multiplier=0.5, min=0.5, max=8),
            before_sleep=_warn_before_retry,
        ):
            with attempt:
                async with self._client() as client:
                    response = await client.get(url)
                if response.status_code >= 500:
                    raise _ServerError(f"HTTP {response.status_code} from {url}")
                if response.status_code == 404:
                    raise TemplateError(
                        f"Template not found at {url}",
                        TemplateErrorCode.TEMPLATE_NOT_FOUND,
                        {"url": url},
                    )
                response.raise_for_status()
                return response.content
        raise AssertionError("unreachable")  # pragma: no cover

    async def _download_and_unpack(self, url: str, target: Path, subdir: str | None) -> None:
        content = await self._download(url)
        with tempfile.TemporaryDirectory(prefix="templateflow-download-") as scratch:
            archive = Path(scratch) / "template-archive"
            await asyncio.to_thread(archive.write_bytes, content)
            await asyncio.to_thread(_unpack_into, archive, target, subdir)

    # ------------------------------------------------------------------
    # Metadata
    # ------------------------------------------------------------------

    async def _load_metadata(self, target: Path, name_hint: str | None) -> TemplateMetadata:
        loaded = await asyncio.to_thread(self.metadata_manager.load, target, name_hint)
        if loaded.success:
            return loaded.value
        print_warning(f"Using default template metadata: {loaded.error}")
        return TemplateMetadata.model_validate(self.metadata_manager.defaults_for(target, name_hint))
