"""Unit tests for script template rendering."""

import pytest

from services.script_templater import ScriptTemplater


class TestScriptTemplater:
    """Test cases for ScriptTemplater class."""

    @pytest.fixture
    def templater(self) -> ScriptTemplater:
        return ScriptTemplater()

    def test_render_file(self, templater) -> None:
        assert templater.render("pytest {{file}} -q", {"file": "tests/test_app.py"}) == (
            "pytest tests/test_app.py -q"
        )

    def test_render_triple_braces_and_whitespace(self, templater) -> None:
        assert templater.render("jest {{{file}}} --coverage={{ originalFile }}", {
            "file": "a.test.js",
            "originalFile": "a.js",
        }) == "jest a.test.js --coverage=a.js"

    def test_unknown_placeholder_renders_empty(self, templater) -> None:
        assert templater.render("run {{file}} {{branch}}", {"file": "x.py", "branch": "main"}) == "run x.py "

    def test_missing_value_renders_empty(self, templater) -> None:
        assert templater.render("pytest {{file}} {{originalFile}}", {"file": "x.py"}) == "pytest x.py "
        assert templater.render("pytest {{originalFile}}", {"originalFile": None}) == "pytest "

    def test_template_without_placeholders(self, templater) -> None:
        assert templater.render("npm test") == "npm test"

    def test_values_are_not_reinterpreted(self, templater) -> None:
        """Test that a substituted value containing braces is left as is."""
        assert templater.render("cat {{file}}", {"file": "{{testFilePaths}}"}) == "cat {{testFilePaths}}"

    def test_join_paths(self, templater) -> None:
        assert templater.render(
            "coverage run -m pytest {{testFilePaths}}",
            {"testFilePaths": templater.join_paths(["tests/a.py", "tests/b.py"])},
        ) == "coverage run -m pytest tests/a.py tests/b.py"
