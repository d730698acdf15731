"""Change detection — classify changed paths into declared path groups."""

from __future__ import annotations

import fnmatch
from collections.abc import Iterable

from switchyard.pipeline.models import PathGroup


def _pattern_variants(pattern: str) -> set[str]:
    """``pattern`` plus every form with some ``**/`` segments dropped."""
    i = pattern.find("**/")
    while i > 0 and pattern[i - 1] != "/":
        i = pattern.find("**/", i + 1)
    if i == -1:
        return {pattern}
    head, tail = pattern[:i], pattern[i + 3 :]
    rest = _pattern_variants(tail)
    return {head + "**/" + t for t in rest} | {head + t for t in rest}


def path_matches(path: str, pattern: str) -> bool:
    """Glob match where ``*`` crosses ``/`` and any ``**/`` segment may match
    zero directories (``src/**/test_*.py`` matches ``src/test_a.py``)."""
    return any(fnmatch.fnmatchcase(path, p) for p in _pattern_variants(pattern))


def classify(changed_paths: Iterable[str], groups: Iterable[PathGroup]) -> set[str]:
    """Return the names of the groups touched by any of ``changed_paths``.

    Empty ``changed_paths`` (e.g. a manual trigger) yields the empty set.
    """
    paths = [p.lstrip("/") for p in changed_paths]
    if not paths:
        return set()
    touched: set[str] = set()
    for group in groups:
        if any(path_matches(p, pattern) for p in paths for pattern in group.patterns):
            touched.add(group.name)
    return touched
