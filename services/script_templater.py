"""Placeholder substitution for lint, test and coverage script templates.

Templates use ``{{name}}`` placeholders (``{{{name}}}`` is accepted too), e.g.
``"pytest {{file}}"``. Unknown placeholders render as an empty string.
"""

import re
from typing import Iterable, Mapping, Optional

PLACEHOLDER_PATTERN = re.compile(r"\{\{(\{)?\s*([^{}\s]+)\s*(?(1)\})\}\}")

FILE = "file"
ORIGINAL_FILE = "originalFile"
TEST_FILE_PATHS = "testFilePaths"


class ScriptTemplater:
    """Renders script templates from relative path values."""

    placeholders = frozenset({FILE, ORIGINAL_FILE, TEST_FILE_PATHS})

    def render(self, template: str, values: Optional[Mapping[str, Optional[str]]] = None) -> str:
        values = values or {}

        def substitute(match: "re.Match[str]") -> str:
            name = match.group(2)
            if name not in self.placeholders:
                return ""
            value = values.get(name)
            return "" if value is None else str(value)

        return PLACEHOLDER_PATTERN.sub(substitute, template)

    @staticmethod
    def join_paths(paths: Iterable[str]) -> str:
        """Value for the ``testFilePaths`` placeholder."""
        return " ".join(paths)
