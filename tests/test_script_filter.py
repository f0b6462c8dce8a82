import shutil

import pytest

from feedloom.errors import ScriptError
from feedloom.models import Item
from feedloom.processors.script_filter import apply_script_filter, parse_script_output, run_shell

needs_bash = pytest.mark.skipif(shutil.which("bash") is None, reason="bash is not available")

ITEMS = [
    Item(title="First", link="https://example.com/1"),
    Item(title="Second", link="https://example.com/2"),
    Item(title="Third", link="https://example.com/3"),
]


class TestParseScriptOutput:
    def test_array(self):
        assert parse_script_output('[{"link": "a"}, {"link": "b"}]') == [{"link": "a"}, {"link": "b"}]

    def test_json_lines(self):
        assert parse_script_output('{"link": "a"}\n\n{"link": "b"}\n') == [{"link": "a"}, {"link": "b"}]

    def test_single_object(self):
        assert parse_script_output('{"link": "a"}') == [{"link": "a"}]

    def test_blank(self):
        assert parse_script_output("  \n") == []

    def test_garbage(self):
        with pytest.raises(ScriptError):
            parse_script_output("not json at all")

    def test_array_of_scalars(self):
        with pytest.raises(ScriptError):
            parse_script_output('["a", "b"]')


@needs_bash
class TestRunShell:
    def test_stdin_is_passed_through(self):
        assert run_shell("cat", "hello", timeout=5) == "hello"

    def test_non_zero_exit(self):
        with pytest.raises(ScriptError, match="exited with 3"):
            run_shell("echo broken >&2; exit 3", "", timeout=5)

    def test_timeout(self):
        with pytest.raises(ScriptError, match="timed out"):
            run_shell("sleep 5", "", timeout=0.2)


@needs_bash
class TestApplyScriptFilter:
    def test_identity_script_keeps_everything(self):
        assert apply_script_filter(ITEMS, "cat", timeout=5) == ITEMS

    def test_keeps_only_echoed_links(self):
        script = "echo '[{\"link\": \"https://example.com/3\"}, {\"link\": \"https://example.com/1\"}]'"
        kept = apply_script_filter(ITEMS, script, timeout=5)
        # Input order is kept, whatever order the script writes
        assert [item.title for item in kept] == ["First", "Third"]

    def test_json_lines_output(self):
        script = "printf '%s\\n' '{\"link\": \"https://example.com/2\"}'"
        assert [item.title for item in apply_script_filter(ITEMS, script, timeout=5)] == ["Second"]

    def test_empty_output_filters_everything(self):
        assert apply_script_filter(ITEMS, "cat > /dev/null", timeout=5) == []

    def test_failure_raises(self):
        with pytest.raises(ScriptError):
            apply_script_filter(ITEMS, "exit 1", timeout=5)
