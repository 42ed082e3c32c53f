"""Local repository file source: walks a checkout and yields source files.

Pure filesystem code, no network access. The result is deterministic:
files are sorted by relative POSIX path so identical trees fingerprint
identically.
"""

import dataclasses
import logging
import os
from fnmatch import fnmatch
from pathlib import Path
from typing import Optional, Sequence

from ..services.records import SourceFile

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Filter sets
# ---------------------------------------------------------------------------

DEFAULT_MAX_FILE_SIZE = 100_000

SKIP_DIRS: set[str] = {
    ".git", "node_modules", "vendor", "__pycache__", ".venv", "venv",
    "dist", "build", ".next", ".nuxt", "target", ".tox", ".pytest_cache",
    ".mypy_cache", ".idea", ".vscode", "coverage", "htmlcov",
}

DEFAULT_INCLUDE: tuple[str, ...] = (
    "*.py", "*.pyi", "*.js", "*.jsx", "*.ts", "*.tsx", "*.go", "*.rs",
    "*.java", "*.kt", "*.rb", "*.c", "*.h", "*.cpp", "*.hpp", "*.cs",
    "*.swift", "*.md", "*.rst", "*.toml", "*.yaml", "*.yml", "*.sql", "*.sh",
    "Dockerfile", "Makefile",
)

DEFAULT_EXCLUDE: tuple[str, ...] = (
    "tests/*", "test/*", "**/tests/**", "**/test/**", "**/__tests__/**",
    "**/*test.js", "**/*spec.js", "**/*test.ts", "**/*spec.ts",
    "**/*.min.js", "**/*.min.css", "**/*.py[cod]", "**/*.so", "**/*.egg-info/**",
    "**/package-lock.json", "**/yarn.lock", "**/pnpm-lock.yaml", "**/poetry.lock",
    "**/uv.lock", "**/Cargo.lock", "**/*.log",
)


@dataclasses.dataclass(frozen=True)
class SkippedFile:
    path: str
    size: int
    reason: str        # "too_large" | "binary" | "unreadable"


@dataclasses.dataclass(frozen=True)
class FileSourceResult:
    files: tuple[SourceFile, ...]
    skipped: tuple[SkippedFile, ...]

    @property
    def total_bytes(self) -> int:
        return sum(len(f.data) for f in self.files)


def matches_any(rel_path: str, patterns: Sequence[str]) -> bool:
    """Glob match against the relative path, ``**/`` prefixes and the basename."""
    name = rel_path.rsplit("/", 1)[-1]
    for pattern in patterns:
        if fnmatch(rel_path, pattern) or fnmatch("/" + rel_path, pattern):
            return True
        if "/" not in pattern and fnmatch(name, pattern):
            return True
    return False


class LocalFileSource:
    """Collects ``(path, content)`` pairs from a local checkout.

    Args:
        root: Repository root directory.
        include: Glob patterns a file must match (defaults to common source types).
        exclude: Glob patterns that drop a file (defaults to tests, lockfiles, build output).
        max_file_size: Files larger than this many bytes are skipped and reported.
    """

    def __init__(
        self,
        root: str | os.PathLike,
        include: Optional[Sequence[str]] = None,
        exclude: Optional[Sequence[str]] = None,
        max_file_size: int = DEFAULT_MAX_FILE_SIZE,
    ):
        self.root = Path(root)
        self.include = tuple(include) if include else DEFAULT_INCLUDE
        self.exclude = tuple(exclude) if exclude is not None else DEFAULT_EXCLUDE
        self.max_file_size = max_file_size

    def collect(self) -> FileSourceResult:
        if not self.root.is_dir():
            raise FileNotFoundError(f"Repository root not found: {self.root}")

        files: list[SourceFile] = []
        skipped: list[SkippedFile] = []

        for current, dirs, names in os.walk(self.root):
            dirs[:] = sorted(d for d in dirs if d not in SKIP_DIRS)
            for name in names:
                full = Path(current) / name
                rel = full.relative_to(self.root).as_posix()
                if not matches_any(rel, self.include) or matches_any(rel, self.exclude):
                    continue
                try:
                    size = full.stat().st_size
                    if size > self.max_file_size:
                        skipped.append(SkippedFile(rel, size, "too_large"))
                        continue
                    content = full.read_bytes().decode("utf-8")
                except UnicodeDecodeError:
                    skipped.append(SkippedFile(rel, size, "binary"))
                    continue
                except OSError as e:
                    logger.warning(f"Could not read {rel}: {e}")
                    skipped.append(SkippedFile(rel, 0, "unreadable"))
                    continue
                files.append(SourceFile(path=rel, content=content))

        files.sort(key=lambda f: f.path)
        skipped.sort(key=lambda s: s.path)
        logger.info(
            f"Collected {len(files)} file(s) from {self.root}, skipped {len(skipped)}",
            extra={"files": len(files), "skipped": len(skipped)},
        )
        return FileSourceResult(files=tuple(files), skipped=tuple(skipped))
