"""Ignore rules deciding which paths take part in sync.

The same filter instance is used by the initial walk, live change events and
restore so that the three never disagree about membership.
"""

import re
from collections.abc import Iterable

from ..config import IgnorePattern
from ..utils import RESERVED_IDENTITY_DIR


class IgnoreFilter:
    """Decides whether a path relative to its watch root is ignored.

    Rules are applied in order:

    1. The reserved default-identity directory and everything below it is
       always ignored. No configuration can disable this.
    2. A literal pattern that is a substring of the path ignores it.
    3. A regular expression that matches anywhere in the path ignores it.

    Examples:
        >>> f = IgnoreFilter(["_cache", re.compile(r"\\.tmp$")])
        >>> f.is_ignored("default-user/settings.json")
        True
        >>> f.is_ignored("chats/_cache/x")
        True
        >>> f.is_ignored("chats/a.jsonl.tmp")
        True
        >>> f.is_ignored("chats/a.jsonl")
        False
    """

    def __init__(self, patterns: Iterable[IgnorePattern] = ()):
        self.literals: list[str] = []
        self.regexes: list[re.Pattern[str]] = []
        for pattern in patterns:
            if isinstance(pattern, str):
                if pattern:
                    self.literals.append(pattern)
            elif isinstance(pattern, re.Pattern):
                self.regexes.append(pattern)
            else:
                raise TypeError(f"Unsupported ignore pattern: {pattern!r}")

    @staticmethod
    def _normalize(relative_path: str) -> str:
        return relative_path.replace("\\", "/").strip("/")

    def is_reserved(self, relative_path: str) -> bool:
        """Check the non-overridable reserved-identity rule alone."""
        path = self._normalize(relative_path)
        return path == RESERVED_IDENTITY_DIR or path.startswith(
            RESERVED_IDENTITY_DIR + "/"
        )

    def is_ignored(self, relative_path: str) -> bool:
        """Check whether a path relative to its watch root is excluded from sync.

        Args:
            relative_path: Path relative to the watch root, forward slashes

        Returns:
            True if the path must not be synced
        """
        if self.is_reserved(relative_path):
            return True

        path = self._normalize(relative_path)
        if any(literal in path for literal in self.literals):
            return True
        return any(regex.search(path) for regex in self.regexes)

    def __call__(self, relative_path: str) -> bool:
        return self.is_ignored(relative_path)
