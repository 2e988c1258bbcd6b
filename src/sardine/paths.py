"""
Glob matching and input enumeration for pipelines and watch bindings.

Patterns are POSIX-style and relative to a root directory. `*` and `?` stay
within one path segment, `**` spans any number of segments, and a leading `!`
turns a pattern into an exclusion.
"""
from __future__ import annotations

import functools
import re
import typing as t
from pathlib import Path, PurePosixPath

if t.TYPE_CHECKING:
    from collections.abc import Iterator, Sequence


_MAGIC = re.compile(r'[*?\[]')


@functools.lru_cache(maxsize=256)
def glob_to_regex(pattern: str) -> re.Pattern[str]:
    """
    Compile a glob @pattern into an anchored regular expression over POSIX
    relative paths.
    """
    parts: list[str] = []
    i = 0
    n = len(pattern)
    while i < n:
        char = pattern[i]
        if pattern.startswith('**/', i):
            parts.append('(?:[^/]+/)*')
            i += 3
        elif pattern.startswith('**', i):
            parts.append('.*')
            i += 2
        elif char == '*':
            parts.append('[^/]*')
            i += 1
        elif char == '?':
            parts.append('[^/]')
            i += 1
        elif char == '[' and (end := pattern.find(']', i + 1)) != -1:
            body = pattern[i + 1:end]
            if body.startswith('!'):
                body = '^' + body[1:]
            parts.append(f'[{body}]')
            i = end + 1
        else:
            parts.append(re.escape(char))
            i += 1
    return re.compile(''.join(parts) + r'\Z')


def has_magic(pattern: str):
    return _MAGIC.search(pattern) is not None


def glob_base(pattern: str) -> PurePosixPath:
    """
    The leading directories of @pattern which contain no wildcards. Output
    paths are computed relative to this base.
    """
    base: list[str] = []
    segments = pattern.split('/')
    for segment in segments[:-1]:
        if has_magic(segment):
            break
        base.append(segment)
    return PurePosixPath(*base) if base else PurePosixPath()


def glob_match(pattern: str, relative: str, dot: bool = False) -> bool:
    """
    Check whether the POSIX relative path @relative matches @pattern. Unless
    @dot is set, segments starting with a dot only match when the pattern
    names them literally.
    """
    if not glob_to_regex(pattern).match(relative):
        return False
    if dot:
        return True
    literal = set(pattern.split('/'))
    return not any(
        part.startswith('.') and part not in literal
        for part in relative.split('/')
    )


class GlobSet:
    """
    A set of include and `!`-prefixed exclude patterns rooted at a directory.
    """
    def __init__(self, root: Path, patterns: str | Sequence[str], dot: bool = False):
        self.root = Path(root)
        if isinstance(patterns, str):
            patterns = [patterns]
        self.includes = [p for p in patterns if not p.startswith('!')]
        self.excludes = [p[1:] for p in patterns if p.startswith('!')]
        self.dot = dot

    def __repr__(self):
        patterns = self.includes + [f'!{p}' for p in self.excludes]
        return f'GlobSet({self.root!s}, {patterns!r})'

    def relative(self, path: Path) -> str | None:
        """
        POSIX form of @path relative to the root, or None when @path is
        outside of it.
        """
        path = Path(path)
        if not path.is_relative_to(self.root):
            return None
        return path.relative_to(self.root).as_posix()

    def excluded(self, relative: str):
        return any(glob_match(p, relative, dot=True) for p in self.excludes)

    def match(self, path: Path) -> str | None:
        """
        Return the first include pattern matching @path, or None if no include
        does or an exclude does.
        """
        relative = self.relative(path)
        if relative is None or self.excluded(relative):
            return None
        for pattern in self.includes:
            if glob_match(pattern, relative, dot=self.dot):
                return pattern
        return None

    def base_dirs(self) -> list[Path]:
        """
        The distinct directories which must be searched (or watched) to find
        every possible match.
        """
        bases: list[Path] = []
        for pattern in self.includes:
            base = self.root / glob_base(pattern)
            if base not in bases:
                bases.append(base)
        return bases

    def find(self) -> Iterator[tuple[Path, PurePosixPath]]:
        """
        Enumerate matching files as pairs of the file path and its path
        relative to the base of the pattern that matched it. A file matched by
        several includes is only produced for the first.
        """
        seen: set[Path] = set()
        for pattern in self.includes:
            base = self.root / glob_base(pattern)
            if not base.is_dir():
                continue
            for candidate in _walk(base):
                if candidate in seen:
                    continue
                relative = candidate.relative_to(self.root).as_posix()
                if self.excluded(relative) or not glob_match(pattern, relative, dot=self.dot):
                    continue
                seen.add(candidate)
                yield candidate, PurePosixPath(candidate.relative_to(base).as_posix())


def _walk(path: Path) -> Iterator[Path]:
    for candidate in path.iterdir():
        if candidate.is_dir():
            yield from _walk(candidate)
        else:
            yield candidate
