"""Template identifier resolution.

Turns a free-form identifier string into one of the ``TemplateSource``
variants.  Resolution is pure: it never touches the filesystem or network and
never raises.  Obviously bad identifiers (empty, ``..`` segments) are rejected
earlier by the pipeline's pre-flight check.

Precedence, first match wins::

    https://... http://... file://...  -> url
    github:owner/repo[/sub][#ref]      -> github
    "."                                -> builtin "."
    default | library | cli | ...      -> builtin
    owner/repo[/sub][#ref]             -> github
    ./x  ../x  /x  anything else       -> local
    ""                                 -> builtin ""

A ``#fragment`` is always taken whole as the ref, because branch names may
themselves contain ``/``.  A subdirectory goes before the fragment:
``owner/repo/templates/cli#main``.
"""

from __future__ import annotations

import asyncio
import os
import re
from pathlib import Path
from urllib.parse import urlparse

from templateflow.models import (
    BuiltinSource,
    GitHubSource,
    LocalSource,
    UrlSource,
    ValidationResult,
)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

BUILTIN_TEMPLATE_NAMES: tuple[str, ...] = ("default", "library", "cli", "react", "node")

GITHUB_PREFIX = "github:"

_URL_SCHEMES: tuple[str, ...] = ("https://", "http://", "file://")
_LOCAL_PREFIXES: tuple[str, ...] = ("./", "../", "/")
_REPO_PATTERN = re.compile(r"^[\w.-]+/[\w.-]+$")

_DEFAULT_BUILTIN_DIR = Path(__file__).parent / "builtin"

AnySource = GitHubSource | LocalSource | UrlSource | BuiltinSource


# ---------------------------------------------------------------------------
# Module-level helpers
# ---------------------------------------------------------------------------


def normalize_source(source: AnySource) -> AnySource:
    """Canonicalise *source*: local paths become absolute, everything else is returned as-is.

    A GitHub ``ref`` is never defaulted here; picking a branch is the
    fetcher's job.
    """
    if isinstance(source, LocalSource):
        location = os.path.abspath(os.path.expanduser(source.location))
        return LocalSource(location=location)
    return source


def strip_github_prefix(location: str) -> str:
    return location[len(GITHUB_PREFIX):] if location.startswith(GITHUB_PREFIX) else location


def is_valid_github_repo(location: str) -> bool:
    """True if *location* (with or without ``github:``) is exactly ``owner/repo``."""
    return bool(_REPO_PATTERN.match(strip_github_prefix(location)))


def is_well_formed_url(location: str) -> bool:
    """True for ``http(s)://host/...`` and ``file:///path`` URLs."""
    try:
        parsed = urlparse(location)
    except ValueError:
        return False
    scheme = parsed.scheme.lower()
    if scheme in ("http", "https"):
        return bool(parsed.netloc)
    if scheme == "file":
        return bool(parsed.path or parsed.netloc)
    return False


def _is_github_shorthand(identifier: str) -> bool:
    repo_part = identifier.split("#", 1)[0]
    return (
        "/" in repo_part
        and "://" not in identifier
        and not identifier.startswith(_LOCAL_PREFIXES)
        and "." not in repo_part
    )


def _split_github(identifier: str) -> GitHubSource:
    repo_part, has_ref, ref = identifier.partition("#")
    prefix = GITHUB_PREFIX if repo_part.startswith(GITHUB_PREFIX) else ""
    segments = repo_part[len(prefix):].split("/")
    subdir = "/".join(s for s in segments[2:] if s)
    return GitHubSource(
        location=prefix + "/".join(segments[:2]),
        ref=ref if has_ref and ref else None,
        subdir=subdir or None,
    )


# ---------------------------------------------------------------------------
# TemplateResolver
# ---------------------------------------------------------------------------


class TemplateResolver:
    """Resolves template identifiers and checks that sources look usable.

    Args:
        builtin_dir: Directory holding the bundled templates.  Defaults to
            the ``builtin/`` folder shipped next to this module.
    """

    def __init__(self, builtin_dir: str | Path | None = None) -> None:
        self.builtin_dir = Path(builtin_dir) if builtin_dir is not None else _DEFAULT_BUILTIN_DIR

    def resolve(self, identifier: str) -> AnySource:
        """Parse *identifier* into a ``TemplateSource``. Never raises.

        Examples::

            resolve("user/repo")                  -> GitHubSource(location="user/repo")
            resolve("user/repo/templates/cli#v2") -> GitHubSource(location="user/repo",
                                                                  ref="v2", subdir="templates/cli")
            resolve("https://example.com/t.zip")  -> UrlSource(...)
            resolve("./my-template")              -> LocalSource(location="./my-template")
            resolve("")                           -> BuiltinSource(location="")
        """
        if identifier.lower().startswith(_URL_SCHEMES):
            return UrlSource(location=identifier)

        if identifier.startswith(GITHUB_PREFIX):
            return _split_github(identifier)

        if identifier == ".":
            return BuiltinSource(location=".")

        if identifier in BUILTIN_TEMPLATE_NAMES:
            return BuiltinSource(location=identifier)

        if _is_github_shorthand(identifier):
            return _split_github(identifier)

        if identifier:
            return LocalSource(location=identifier)

        return BuiltinSource(location="")

    def normalize(self, source: AnySource) -> AnySource:
        return normalize_source(source)

    async def validate(self, source: AnySource) -> ValidationResult:
        """Check that *source* can plausibly be fetched.

        Only the local check touches the filesystem.  No network calls are made.
        """
        errors: list[str] = []

        if isinstance(source, LocalSource):
            exists = await asyncio.to_thread(Path(source.location).expanduser().is_dir)
            if not exists:
                errors.append(f"Local template directory does not exist: {source.location}")
        elif isinstance(source, GitHubSource):
            if not is_valid_github_repo(source.location):
                errors.append(f"Invalid GitHub repository format: {source.location}")
        elif isinstance(source, UrlSource):
            if not is_well_formed_url(source.location):
                errors.append(f"Invalid URL format: {source.location}")
        elif isinstance(source, BuiltinSource):
            if source.location not in BUILTIN_TEMPLATE_NAMES:
                errors.append(f"Built-in template does not exist: {source.location}")
        else:
            errors.append(f"Unknown template source type: {getattr(source, 'type', source)!r}")

        return ValidationResult(valid=not errors, errors=errors or None)

    def get_builtin_templates(self) -> list[str]:
        """Names of the bundled templates on disk; empty if the bundle is unavailable."""
        try:
            return sorted(
                entry.name
                for entry in self.builtin_dir.iterdir()
                if entry.is_dir() and not entry.name.startswith((".", "_"))
            )
        except OSError:
            return []

    def get_builtin_template_path(self, name: str) -> Path:
        return self.builtin_dir / name
