"""Shared utility functions for templateflow.

Provides Rich-based console reporting, duration formatting, JSON I/O, glob
pattern matching for ignore lists, file classification (text vs. binary), and
the pre-flight check applied to template identifiers.
"""

from __future__ import annotations

import json
import re
from functools import lru_cache
from pathlib import Path
from typing import Any, Iterable

from rich.console import Console
from rich.progress import BarColumn, Progress, SpinnerColumn, TextColumn, TimeElapsedColumn
from rich.rule import Rule
from rich.table import Table

console = Console()

# ---------------------------------------------------------------------------
# JSON I/O
# ---------------------------------------------------------------------------


def load_json(path: str | Path) -> dict[str, Any]:
    """Load and parse a JSON file that holds a top-level object.

    Raises:
        FileNotFoundError: If the file does not exist.
        json.JSONDecodeError: If the file is not valid JSON.
        ValueError: If the document is not a JSON object.
    """
    data = json.loads(Path(path).read_text(encoding="utf-8"))
    if not isinstance(data, dict):
        raise ValueError(f"{path} must contain a JSON object, got {type(data).__name__}")
    return data


def write_json_file(data: dict[str, Any] | list[Any], path: str | Path) -> Path:
    """Write *data* as two-space indented JSON with a trailing newline.

    Parent directories are created automatically.
    """
    file_path = Path(path)
    file_path.parent.mkdir(parents=True, exist_ok=True)
    content = json.dumps(data, indent=2, ensure_ascii=False) + "\n"
    file_path.write_text(content, encoding="utf-8")
    return file_path


# ---------------------------------------------------------------------------
# Template identifier pre-flight
# ---------------------------------------------------------------------------


def check_template_identifier(identifier: str) -> str | None:
    """Return why *identifier* must be rejected, or ``None`` if it may be resolved.

    Rejects empty/whitespace-only identifiers, embedded NUL bytes, and any
    ``..`` path segment (``../x``, ``a/../b``, ``..\\x``).

    Examples::

        check_template_identifier("user/repo")           -> None
        check_template_identifier("   ")                 -> "identifier is empty"
        check_template_identifier("../../../etc/passwd") -> "path traversal ..."
    """
    if not identifier or not identifier.strip():
        return "identifier is empty"
    if "\x00" in identifier:
        return "identifier contains a NUL byte"
    segments = re.split(r"[\\/]", identifier.strip())
    if ".." in segments:
        return "path traversal segments ('..') are not allowed"
    return None


# ---------------------------------------------------------------------------
# Glob matching
# ---------------------------------------------------------------------------


@lru_cache(maxsize=256)
def glob_to_regex(pattern: str) -> re.Pattern[str]:
    """Compile a ``**``-aware glob into a regex over POSIX relative paths.

    * ``**/`` matches zero or more leading directories.
    * ``/**`` matches the directory itself and everything below it.
    * ``*`` and ``?`` never cross a ``/``.
    """
    parts: list[str] = []
    i = 0
    while i < len(pattern):
        if pattern.startswith("**/", i):
            parts.append("(?:.*/)?")
            i += 3
        elif pattern.startswith("/**", i) and i + 3 == len(pattern):
            parts.append("(?:/.*)?")
            i += 3
        elif pattern.startswith("**", i):
            parts.append(".*")
            i += 2
        elif pattern[i] == "*":
            parts.append("[^/]*")
            i += 1
        elif pattern[i] == "?":
            parts.append("[^/]")
            i += 1
        else:
            parts.append(re.escape(pattern[i]))
            i += 1
    return re.compile("^" + "".join(parts) + "$")


def matches_any(relative_path: str, patterns: Iterable[str]) -> bool:
    """True if the POSIX *relative_path* matches one of the glob *patterns*."""
    return any(glob_to_regex(p).match(relative_path) for p in patterns)


# ---------------------------------------------------------------------------
# File classification
# ---------------------------------------------------------------------------

TEXT_EXTENSIONS: frozenset[str] = frozenset({
    ".txt", ".md", ".json", ".js", ".mjs", ".cjs", ".ts", ".jsx", ".tsx",
    ".css", ".scss", ".sass", ".less", ".html", ".xml", ".yml", ".yaml",
    ".toml", ".ini", ".cfg", ".sh", ".bash", ".zsh", ".fish", ".py", ".rb",
    ".php", ".java", ".c", ".cpp", ".h", ".hpp", ".cs", ".go", ".rs", ".kt",
    ".swift", ".dart", ".vue", ".svelte", ".astro", ".eta", ".template",
    ".j2", ".gitignore", ".npmignore", ".eslintrc", ".prettierrc",
    ".editorconfig", ".npmrc", ".nvmrc",
})

BINARY_EXTENSIONS: frozenset[str] = frozenset({
    ".jpg", ".jpeg", ".png", ".gif", ".bmp", ".ico", ".webp", ".pdf",
    ".zip", ".tar", ".gz", ".tgz", ".rar", ".7z", ".exe", ".dll", ".so",
    ".dylib", ".bin", ".woff", ".woff2", ".ttf", ".otf", ".eot", ".mp3",
    ".mp4", ".avi", ".mov", ".wmv",
})

_EXTENSIONLESS_TEXT_FILES: tuple[str, ...] = (
    "dockerfile", "makefile", "rakefile", "gemfile", "procfile", "license", ".env",
)


def is_text_file(path: str | Path) -> bool:
    """Guess from the name whether *path* is a text file worth rendering."""
    p = Path(path)
    if p.suffix.lower() in TEXT_EXTENSIONS or p.name.lower() in TEXT_EXTENSIONS:
        return True
    name = p.name.lower()
    return any(name.startswith(candidate) for candidate in _EXTENSIONLESS_TEXT_FILES)


def is_binary_file(path: str | Path) -> bool:
    return Path(path).suffix.lower() in BINARY_EXTENSIONS


# ---------------------------------------------------------------------------
# Formatting helpers
# ---------------------------------------------------------------------------


def format_duration(seconds: float) -> str:
    """Format a duration in seconds to a human-readable string.

    Examples::

        format_duration(0.0042) -> "4ms"
        format_duration(3.7)    -> "3.7s"
        format_duration(65.2)   -> "1m 5s"
    """
    if seconds < 0:
        return "0ms"
    if seconds < 1:
        return f"{seconds * 1000:.0f}ms"

    minutes = int(seconds // 60)
    secs = seconds % 60
    if minutes > 0:
        return f"{minutes}m {int(secs)}s"
    return f"{secs:.1f}s"


# ---------------------------------------------------------------------------
# Rich output helpers
# ---------------------------------------------------------------------------

STAGE_COLORS: dict[str, str] = {
    "resolve": "bright_cyan",
    "fetch": "bright_green",
    "validate": "bright_yellow",
    "render": "bright_magenta",
}


def print_stage_header(stage: str) -> None:
    """Print a rule announcing a pipeline stage, coloured per stage."""
    color = STAGE_COLORS.get(stage, "white")
    console.print(Rule(f"[bold {color}] {stage.upper()} [/bold {color}]", style=color))


def print_summary_table(data: dict[str, str], title: str = "Summary") -> None:
    """Print a two-column key/value summary table."""
    table = Table(title=title, show_header=True, header_style="bold cyan")
    table.add_column("Item", style="dim", no_wrap=True)
    table.add_column("Value")

    for key, value in data.items():
        table.add_row(key, str(value))

    console.print(table)
    console.print()


def print_success(message: str) -> None:
    """Print a green success message."""
    console.print(f"[bold green]{message}[/bold green]")


def print_error(message: str) -> None:
    """Print a red error message."""
    console.print(f"[bold red]{message}[/bold red]")


def print_warning(message: str) -> None:
    """Print a yellow warning message."""
    console.print(f"[bold yellow]{message}[/bold yellow]")


def create_progress() -> Progress:
    """Create a Rich progress bar for the four pipeline stages."""
    return Progress(
        SpinnerColumn(),
        TextColumn("[progress.description]{task.description}"),
        BarColumn(),
        TimeElapsedColumn(),
        console=console,
    )
