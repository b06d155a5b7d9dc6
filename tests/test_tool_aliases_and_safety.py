from __future__ import annotations

import pytest

from behaviorforge.tools.aliases import canonical_tool_name, map_tool_call
from behaviorforge.tools.safety import ToolSafetyPolicy


@pytest.mark.parametrize(
    ("name", "arguments", "expected"),
    [
        ("codebase", {"filePath": "src/app.py"}, ("read_file", {"path": "src/app.py", "startLine": 1, "endLine": 100})),
        ("editFiles", {"filePath": "a.md", "content": "x"}, ("write_file", {"path": "a.md", "content": "x"})),
        (
            "search",
            {"query": "TODO", "includePattern": "src"},
            ("search_files", {"pattern": "TODO", "path": "src", "caseSensitive": False}),
        ),
        ("file_search", {"query": "*.py"}, ("search_files", {"pattern": "*.py", "path": ".", "caseSensitive": False})),
        ("list_dir", {"path": "src"}, ("list_directory", {"path": "src"})),
        ("get_current_time", {}, ("get_current_time", {})),
    ],
)
def test_aliases_translate_names_and_arguments(name: str, arguments: dict, expected: tuple) -> None:
    assert map_tool_call(name, arguments) == expected


def test_defaults_apply_to_canonical_names_and_null_values() -> None:
    assert map_tool_call("read_file", {"path": "a.py", "endLine": None}) == (
        "read_file",
        {"path": "a.py", "endLine": 100, "startLine": 1},
    )
    assert map_tool_call("read_file", {"path": "a.py", "startLine": 40})[1]["startLine"] == 40


def test_mapping_does_not_mutate_caller_arguments() -> None:
    arguments = {"filePath": "src/app.py"}

    map_tool_call("codebase", arguments)

    assert arguments == {"filePath": "src/app.py"}


def test_canonical_tool_name() -> None:
    assert canonical_tool_name("codebase") == "read_file"
    assert canonical_tool_name("read_file") == "read_file"


@pytest.mark.parametrize(
    "tool",
    ["read_file", "list_directory", "search_files", "git_status", "git_diff", "get_current_time", "read_graph"],
)
def test_read_only_tools_are_safe(tool: str) -> None:
    assert ToolSafetyPolicy().is_safe(tool) is True


@pytest.mark.parametrize(
    "tool",
    ["write_file", "create_directory", "delete_file", "git_commit", "git_push", "execute_command", "Edit_File"],
)
def test_mutating_tools_are_unsafe(tool: str) -> None:
    assert ToolSafetyPolicy().is_safe(tool) is False


def test_unclassified_tools_default_to_safe() -> None:
    assert ToolSafetyPolicy().is_safe("echo") is True


def test_safe_patterns_win_over_unsafe_patterns() -> None:
    policy = ToolSafetyPolicy()

    assert policy.is_safe("read_process_list") is True
    assert ToolSafetyPolicy(safe_patterns=()).is_safe("read_process_list") is False
