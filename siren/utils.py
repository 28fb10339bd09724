"""Utility functions for Siren.

Glob matching is shared by stages (which files to read) and watch rules
(which change events to react to), so both use the same semantics:
- ``*`` matches within one path segment, ``**`` matches any number of segments.
- ``?`` matches one character, ``[...]`` / ``[!...]`` are character classes.
- A pattern starting with ``!`` excludes files matched by the positive patterns.

Key functions:
    glob_to_regex: Compile a glob pattern into a regular expression.
    match_path: Check a relative path against a pattern set.
    iter_matching: List files under a directory matching a pattern set.
    format_duration: Human-readable elapsed time.
"""

from __future__ import annotations

import functools
import re
from collections.abc import Iterable, Sequence
from pathlib import Path, PurePosixPath


@functools.lru_cache(maxsize=256)
def glob_to_regex(pattern: str) -> re.Pattern[str]:
    """Compile a glob pattern into an anchored regular expression.

    Args:
        pattern: Glob pattern using forward slashes.

    Returns:
        Compiled regex matching whole relative POSIX paths.

    Examples:
        >>> bool(glob_to_regex("**/*.scss").match("styles/main.scss"))
        True

        >>> bool(glob_to_regex("**/*.scss").match("main.scss"))
        True
    """
    i = 0
    n = len(pattern)
    parts: list[str] = []
    while i < n:
        c = pattern[i]
        if c == "*":
            if pattern[i : i + 3] == "**/":
                parts.append("(?:.*/)?")
                i += 3
                continue
            if pattern[i : i + 2] == "**":
                parts.append(".*")
                i += 2
                continue
            parts.append("[^/]*")
        elif c == "?":
            parts.append("[^/]")
        elif c == "[":
            end = pattern.find("]", i + 1)
            if end == -1:
                parts.append(re.escape(c))
            else:
                body = pattern[i + 1 : end]
                if body.startswith(("!", "^")):
                    body = "^/" + body[1:]
                parts.append(f"[{body}]")
                i = end
        else:
            parts.append(re.escape(c))
        i += 1
    return re.compile("".join(parts) + r"\Z")


def split_patterns(patterns: Iterable[str]) -> tuple[list[str], list[str]]:
    """Split a pattern set into (includes, excludes)."""
    includes: list[str] = []
    excludes: list[str] = []
    for pattern in patterns:
        if pattern.startswith("!"):
            excludes.append(pattern[1:])
        else:
            includes.append(pattern)
    return includes, excludes


def match_path(rel: str | PurePosixPath, patterns: Sequence[str]) -> bool:
    """Check whether a relative path matches a pattern set.

    Args:
        rel: Path relative to the directory the patterns are rooted at.
        patterns: Glob patterns; entries starting with ``!`` exclude.

    Returns:
        True if any include matches and no exclude matches.
    """
    text = str(PurePosixPath(rel))
    includes, excludes = split_patterns(patterns)
    if not any(glob_to_regex(p).match(text) for p in includes):
        return False
    return not any(glob_to_regex(p).match(text) for p in excludes)


def iter_matching(root: Path, patterns: Sequence[str]) -> list[Path]:
    """Return files under root matching the pattern set, sorted.

    A missing root yields an empty list.

    Args:
        root: Directory the patterns are relative to.
        patterns: Glob patterns; entries starting with ``!`` exclude.

    Returns:
        Sorted list of absolute file paths.
    """
    if not root.is_dir():
        return []
    matches = []
    for path in root.rglob("*"):
        if not path.is_file():
            continue
        if match_path(path.relative_to(root).as_posix(), patterns):
            matches.append(path)
    return sorted(matches)


def is_within(path: Path, directory: Path) -> bool:
    """Check whether path is directory itself or lies inside it."""
    try:
        path.relative_to(directory)
    except ValueError:
        return False
    return True


def format_duration(seconds: float) -> str:
    """Format elapsed seconds the way task runners report them.

    Examples:
        >>> format_duration(0.0123)
        '12 ms'

        >>> format_duration(2.5)
        '2.5 s'
    """
    if seconds < 1:
        return f"{int(seconds * 1000)} ms"
    return f"{seconds:.1f} s"
