"""Ignore filter: skip paths whose relative form matches a regular expression.

The pattern is searched (not anchored) against the forward-slash relative
path, so ``^\\.`` hides dot-files at the top level and ``(^|/)\\.`` hides them
at any depth.
"""

from __future__ import annotations

import re
from typing import Optional, Pattern, Union

from memserve.errors import ErrorCode, MemserveError


class IgnoreFilter:
    def __init__(self, pattern: Union[str, Pattern[str]]):
        if isinstance(pattern, str):
            try:
                pattern = re.compile(pattern)
            except re.error as e:
                raise MemserveError(
                    ErrorCode.CONFIG_INVALID,
                    f"Invalid ignore pattern: {e}",
                    details={"pattern": pattern},
                ) from e
        self._pattern = pattern

    @classmethod
    def from_pattern(cls, pattern: Optional[str]) -> Optional["IgnoreFilter"]:
        """None when no pattern is configured."""
        if not pattern:
            return None
        return cls(pattern)

    @property
    def pattern(self) -> str:
        return self._pattern.pattern

    def matches(self, rel_path: str) -> bool:
        return self._pattern.search(rel_path.replace("\\", "/")) is not None

    __call__ = matches

    def __repr__(self) -> str:
        return f"IgnoreFilter({self.pattern!r})"
