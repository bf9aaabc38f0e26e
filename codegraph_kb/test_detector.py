"""
Test-code classification.

Entities are tagged ``is_test`` when their file path matches one of the
configured test patterns, or when a language-level marker says so (Rust
``#[test]`` / ``#[cfg(test)]`` attributes, Go ``TestXxx`` functions).  Test
entities are excluded from the persisted graph by default.
"""

from __future__ import annotations

import fnmatch
import re
from typing import Iterable, Optional

_RUST_TEST_ATTRS = ("#[test]", "#[tokio::test", "#[cfg(test)]", "#[rstest", "#[bench]")
_GO_TEST_FUNC_RE = re.compile(r"^(Test|Benchmark|Example|Fuzz)([A-Z_0-9]|$)")


class TestDetector:
    """
    Classify files and entities as test code.

    Parameters
    ----------
    path_patterns:
        fnmatch-style patterns.  Patterns containing ``/`` are matched against
        the full relative POSIX path; the rest against the file name only.
    """

    __test__ = False  # not a pytest test class

    def __init__(self, path_patterns: Iterable[str]) -> None:
        self._path_patterns: list[str] = []
        self._name_patterns: list[str] = []
        for pattern in path_patterns:
            if "/" in pattern:
                self._path_patterns.append(pattern)
            else:
                self._name_patterns.append(pattern)

    def is_test_path(self, file_path: str) -> bool:
        """Return True if *file_path* matches a configured test pattern."""
        path = file_path.replace("\\", "/")
        name = path.rsplit("/", 1)[-1]
        if any(fnmatch.fnmatchcase(name, p) for p in self._name_patterns):
            return True
        return any(fnmatch.fnmatchcase(path, p) for p in self._path_patterns)

    @staticmethod
    def is_test_entity(
        language: str,
        name: str,
        attributes: str = "",
        file_path: str = "",
    ) -> bool:
        """
        Return True if a language-level marker flags the entity as a test.

        Parameters
        ----------
        language:
            Extractor language name.
        name:
            Short entity name.
        attributes:
            Source text of attributes/annotations attached to the entity.
        file_path:
            Path of the containing file.
        """
        if language == "rust":
            return any(marker in attributes for marker in _RUST_TEST_ATTRS)
        if language == "go":
            return file_path.endswith("_test.go") and bool(_GO_TEST_FUNC_RE.match(name))
        if language == "java" or language == "c_sharp":
            return any(
                marker in attributes
                for marker in ("@Test", "@ParameterizedTest", "[Test]", "[Fact]", "[TestMethod]")
            )
        return False


def default_detector(patterns: Optional[Iterable[str]] = None) -> TestDetector:
    """Build a detector from *patterns* or the built-in defaults."""
    if patterns is None:
        from .config import _DEFAULTS
        patterns = _DEFAULTS["test_path_patterns"]
    return TestDetector(patterns)
