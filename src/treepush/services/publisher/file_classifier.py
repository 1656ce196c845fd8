"""
File classifier for publication eligibility.

Walks an extracted archive depth-first and decides, per entry, whether it
may be published:
- directories on the skip-list are pruned (never visited)
- OS metadata, log and dotenv secret files are skipped
- remaining files must look like text by name or extension
- a null byte in the first 1024 bytes marks a file as binary
- files above the size ceiling (1 MiB of decoded text) are skipped

The walk is a pure, restartable iterable; logging subscribes to it through
``log_classification``.
"""

import logging
import os
from dataclasses import dataclass
from enum import Enum
from pathlib import Path, PurePosixPath
from typing import FrozenSet, Iterable, Iterator, List, Optional

from treepush.services.publisher.models import WorkingFile

logger = logging.getLogger(__name__)

BINARY_SNIFF_BYTES = 1024
DEFAULT_MAX_TEXT_BYTES = 1024 * 1024
# UTF-8 never uses more than 4 bytes per character
_MAX_UTF8_BYTES_PER_CHAR = 4


class Decision(str, Enum):
    """Classification outcome for a walked entry."""

    INCLUDED = "included"
    SKIPPED_DIRECTORY = "skipped_directory"
    SKIPPED_FILE = "skipped_file"
    NOT_TEXT = "not_text"
    BINARY = "binary"
    TOO_LARGE = "too_large"
    INVALID_PATH = "invalid_path"
    UNREADABLE = "unreadable"


SKIP_DIRECTORIES: FrozenSet[str] = frozenset({
    ".git",
    "node_modules",
    ".next",
    "dist",
    "build",
    ".svn",
    ".hg",
    "__pycache__",
    ".pytest_cache",
    ".coverage",
    ".nyc_output",
    "coverage",
    "tmp",
    "temp",
    ".vscode",
    ".idea",
})

SKIP_FILES: FrozenSet[str] = frozenset({
    ".ds_store",
    "thumbs.db",
    "desktop.ini",
    ".env",
})

# Dotenv templates carry no secrets and are published
DOTENV_TEMPLATES: FrozenSet[str] = frozenset({".env.example", ".env.template", ".env.sample"})

SKIP_EXTENSIONS: FrozenSet[str] = frozenset({".tmp", ".temp"})

TEXT_EXTENSIONS: FrozenSet[str] = frozenset({
    # Web development
    ".js", ".jsx", ".ts", ".tsx", ".vue", ".svelte", ".astro",
    ".html", ".htm", ".xml", ".svg",
    ".css", ".scss", ".sass", ".less", ".stylus",
    ".json", ".jsonc", ".json5",
    # Module formats
    ".mjs", ".cjs", ".esm",
    # Documentation and text
    ".md", ".mdx", ".txt", ".rst",
    # Other programming languages
    ".py", ".java", ".cpp", ".c", ".h", ".cs", ".php", ".rb", ".go", ".rs",
    ".swift", ".kt", ".scala", ".dart", ".lua",
    # Shell scripts
    ".sh", ".bash", ".zsh", ".fish", ".ps1", ".cmd", ".bat",
    # Data and config formats
    ".yml", ".yaml", ".toml", ".ini", ".cfg", ".conf", ".properties",
    ".csv", ".tsv", ".sql",
    # Source maps
    ".map",
})

TEXT_DOTFILES: FrozenSet[str] = DOTENV_TEMPLATES | frozenset({
    ".gitignore",
    ".gitattributes",
    ".editorconfig",
    ".prettierrc",
    ".eslintrc",
    ".babelrc",
    ".browserslistrc",
    ".npmrc",
    ".nvmrc",
})

# Matched as case-insensitive substrings of extensionless names
TEXT_FILE_NAMES = (
    "readme", "license", "changelog", "contributing", "authors", "copying",
    "install", "news", "todo", "makefile", "dockerfile", "procfile",
    "rakefile", "gemfile", "guardfile", "gruntfile", "gulpfile",
)

CONFIG_SCRIPT_EXTENSIONS: FrozenSet[str] = frozenset({".js", ".ts", ".mjs", ".cjs"})
DOTFILE_CONFIG_HINTS = ("rc", "config", "ignore", "lint")


@dataclass(frozen=True)
class ClassifiedEntry:
    """A walked entry together with its classification."""

    relative_path: str
    absolute_path: Path
    decision: Decision
    content: Optional[bytes] = None
    detail: str = ""

    @property
    def included(self) -> bool:
        return self.decision is Decision.INCLUDED


def should_skip_directory(dir_name: str) -> bool:
    """Check whether a directory is pruned from the walk."""
    return dir_name in SKIP_DIRECTORIES


def should_skip_file(file_name: str) -> bool:
    """Check whether a file is on the skip-list.

    Examples:
        >>> should_skip_file("debug.log")
        True
        >>> should_skip_file("CHANGELOG.log")
        False
        >>> should_skip_file(".env.production")
        True
        >>> should_skip_file(".env.example")
        False
    """
    lower = file_name.lower()
    if lower in SKIP_FILES:
        return True
    if lower.startswith(".env.") and lower not in DOTENV_TEMPLATES:
        return True
    if lower.endswith(".log") and "changelog" not in lower:
        return True
    return os.path.splitext(lower)[1] in SKIP_EXTENSIONS


def is_text_file(file_name: str) -> bool:
    """Decide by name alone whether a file is a text file.

    Examples:
        >>> is_text_file("index.tsx")
        True
        >>> is_text_file("Dockerfile")
        True
        >>> is_text_file("vite.config.mts")
        False
        >>> is_text_file(".eslintrc")
        True
        >>> is_text_file("logo.png")
        False
    """
    lower = file_name.lower()
    ext = os.path.splitext(lower)[1]

    if ext in TEXT_EXTENSIONS or lower in TEXT_DOTFILES:
        return True

    if not ext and any(name in lower for name in TEXT_FILE_NAMES):
        return True

    if "config" in lower and ext in CONFIG_SCRIPT_EXTENSIONS:
        return True

    if lower.startswith(".") and any(hint in lower for hint in DOTFILE_CONFIG_HINTS):
        return True

    return False


def is_binary_file(path: Path) -> bool:
    """Sniff the first 1024 bytes for a null byte; unreadable files count as binary."""
    try:
        with open(path, "rb") as f:
            sample = f.read(BINARY_SNIFF_BYTES)
    except OSError:
        return True
    return b"\x00" in sample


def normalize_relative_path(path: Path, root: Path) -> Optional[str]:
    """Return the POSIX path of ``path`` relative to ``root``, or None if unsafe."""
    try:
        relative = path.relative_to(root).as_posix()
    except ValueError:
        return None
    relative = relative.replace("\\", "/")
    if not relative or relative == "." or relative.startswith("/"):
        return None
    if ".." in PurePosixPath(relative).parts:
        return None
    return relative


class FileClassification:
    """Lazy, restartable classification of every entry under ``root``.

    Each iteration re-walks the filesystem depth-first, visiting the entries
    of a directory in name order and yielding files and pruned directories.
    """

    def __init__(self, root: Path, max_text_bytes: int = DEFAULT_MAX_TEXT_BYTES):
        self.root = Path(root)
        self.max_text_bytes = max_text_bytes

    def __iter__(self) -> Iterator[ClassifiedEntry]:
        return self._walk(self.root)

    def _walk(self, directory: Path) -> Iterator[ClassifiedEntry]:
        try:
            with os.scandir(directory) as it:
                entries = sorted(it, key=lambda e: e.name)
        except OSError as e:
            logger.warning(
                "Error reading directory",
                extra={"directory": str(directory), "error": str(e)},
            )
            return

        for entry in entries:
            path = Path(entry.path)
            relative_path = normalize_relative_path(path, self.root) or entry.name

            if entry.is_symlink():
                yield ClassifiedEntry(relative_path, path, Decision.SKIPPED_FILE, detail="symlink")
                continue

            if entry.is_dir():
                if should_skip_directory(entry.name):
                    yield ClassifiedEntry(relative_path, path, Decision.SKIPPED_DIRECTORY)
                    continue
                yield from self._walk(path)
                continue

            if entry.is_file():
                yield self._classify_file(path, entry.name)

    def _classify_file(self, path: Path, name: str) -> ClassifiedEntry:
        relative_path = normalize_relative_path(path, self.root)
        display_path = relative_path or name

        if should_skip_file(name):
            return ClassifiedEntry(display_path, path, Decision.SKIPPED_FILE)

        if not is_text_file(name):
            return ClassifiedEntry(display_path, path, Decision.NOT_TEXT)

        if is_binary_file(path):
            return ClassifiedEntry(display_path, path, Decision.BINARY)

        try:
            size_bytes = path.stat().st_size
            if size_bytes > self.max_text_bytes * _MAX_UTF8_BYTES_PER_CHAR:
                return ClassifiedEntry(
                    display_path, path, Decision.TOO_LARGE, detail=f"{size_bytes} bytes"
                )
            content = path.read_bytes()
        except OSError as e:
            return ClassifiedEntry(display_path, path, Decision.UNREADABLE, detail=str(e))

        if len(content) > self.max_text_bytes:
            decoded_length = len(content.decode("utf-8", errors="replace"))
            if decoded_length > self.max_text_bytes:
                return ClassifiedEntry(
                    display_path, path, Decision.TOO_LARGE, detail=f"{decoded_length} characters"
                )

        if relative_path is None:
            return ClassifiedEntry(display_path, path, Decision.INVALID_PATH)

        return ClassifiedEntry(relative_path, path, Decision.INCLUDED, content=content)


def log_classification(entries: Iterable[ClassifiedEntry]) -> Iterator[ClassifiedEntry]:
    """Pass entries through unchanged, logging every exclusion."""
    for entry in entries:
        if entry.decision is Decision.TOO_LARGE:
            logger.warning(
                f"Skipping large file: {entry.relative_path}",
                extra={"path": entry.relative_path, "detail": entry.detail},
            )
        elif entry.decision in (Decision.INVALID_PATH, Decision.UNREADABLE):
            logger.warning(
                f"Skipping file: {entry.relative_path}",
                extra={"path": entry.relative_path, "decision": entry.decision.value, "detail": entry.detail},
            )
        elif not entry.included:
            logger.debug(
                f"Skipping {entry.decision.value}: {entry.relative_path}",
                extra={"path": entry.relative_path, "decision": entry.decision.value},
            )
        yield entry


def classify(working_dir: Path, max_text_bytes: int = DEFAULT_MAX_TEXT_BYTES) -> List[WorkingFile]:
    """Build the WorkingTree for ``working_dir``.

    Args:
        working_dir: Root of the stripped archive content
        max_text_bytes: Size ceiling in decoded characters

    Returns:
        Eligible files in depth-first walk order
    """
    tree: List[WorkingFile] = []
    seen = set()
    for entry in log_classification(FileClassification(working_dir, max_text_bytes)):
        if not entry.included:
            continue
        # Backslash normalization can fold two entries onto one path
        if entry.relative_path in seen:
            logger.warning(
                f"Skipping duplicate path: {entry.relative_path}",
                extra={"path": entry.relative_path, "absolute_path": str(entry.absolute_path)},
            )
            continue
        seen.add(entry.relative_path)
        tree.append(WorkingFile(relative_path=entry.relative_path, content=entry.content or b""))
    logger.info(
        f"Found {len(tree)} files to upload",
        extra={"working_dir": str(working_dir), "file_count": len(tree)},
    )
    return tree
