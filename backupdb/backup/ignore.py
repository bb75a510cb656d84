"""
Ignore rules for folder captures.

Patterns use shell-style globbing (``*``, ``?``, ``[...]``) and are matched
against paths relative to the source root:

- file patterns match the full relative path or the base name
- folder patterns match any single path segment or the full relative path
"""

import os
import re
import logging
from fnmatch import fnmatchcase
from typing import Iterable, List, Optional


logger = logging.getLogger(__name__)


def glob_match(pattern: str, name: str) -> bool:
    """
    Match a name against a shell-style pattern.

    Malformed patterns never match instead of raising.
    """
    try:
        return fnmatchcase(name, pattern)
    except re.error:
        return False


class IgnoreMatcher:
    """
    Decides whether a path under a source root is skipped.

    Separators in the relative path are normalised to ``/`` so rules written
    in the job file behave the same on every platform.
    """

    def __init__(
        self,
        source_root: str,
        file_patterns: Optional[Iterable[str]] = None,
        folder_patterns: Optional[Iterable[str]] = None,
        logger: Optional[logging.Logger] = None
    ):
        self.source_root = os.path.abspath(source_root)
        self.file_patterns: List[str] = [p for p in (file_patterns or []) if p]
        self.folder_patterns: List[str] = [p for p in (folder_patterns or []) if p]
        self.logger = logger or logging.getLogger(__name__)

    def relative_path(self, path: str) -> Optional[str]:
        """Return ``path`` relative to the source root, or None if outside it."""
        try:
            rel_path = os.path.relpath(os.path.abspath(path), self.source_root)
        except ValueError:
            # Different drives on Windows
            return None

        if rel_path == os.curdir or rel_path.startswith(os.pardir + os.sep) or rel_path == os.pardir:
            return None

        return rel_path.replace(os.sep, '/')

    def should_skip(self, path: str) -> bool:
        """
        Check whether ``path`` is excluded by the file or folder rules.

        The source root itself is never skipped.
        """
        if not self.file_patterns and not self.folder_patterns:
            return False

        rel_path = self.relative_path(path)
        if rel_path is None:
            if os.path.abspath(path) != self.source_root:
                self.logger.error(f"Path {path} is outside source root {self.source_root}")
            return False

        return self.matches_file(rel_path) or self.matches_folder(rel_path)

    def matches_file(self, rel_path: str) -> bool:
        basename = rel_path.rsplit('/', 1)[-1]
        for pattern in self.file_patterns:
            if glob_match(pattern, rel_path) or glob_match(pattern, basename):
                return True
        return False

    def matches_folder(self, rel_path: str) -> bool:
        segments = rel_path.split('/')
        for pattern in self.folder_patterns:
            if any(glob_match(pattern, segment) for segment in segments):
                return True
            if glob_match(pattern, rel_path):
                return True
        return False
