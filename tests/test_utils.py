import json
import os
import stat

from bash_mcp.config import STANDARD_PATHS
from bash_mcp.utils import (
    build_shell_env, ensure_socket_dir, ensure_standard_paths, json_line, resolve_runtime_paths,
    to_bool, truncate_for_log, clamp_int
)


def test_build_shell_env_does_not_mutate_base():
    base = {"PATH": "/custom/bin", "HOME": "/home/x"}
    env = build_shell_env(base, "/tmp/socks")
    assert base == {"PATH": "/custom/bin", "HOME": "/home/x"}
    assert env["HOME"] == "/home/x"
    assert env["MCP_NESTED"] == "1"
    assert env["MCP_SOCKET_DIR"] == "/tmp/socks"
    assert env["MCP_SKILLS_SOCKET"] == "/tmp/socks/skills.sock"


def test_standard_paths_prepended_once():
    path = ensure_standard_paths("/usr/bin:/custom/bin")
    entries = path.split(os.pathsep)
    for p in STANDARD_PATHS:
        assert entries.count(p) == 1
    assert entries[-2:] == ["/usr/bin", "/custom/bin"]
    assert entries[0] == "/usr/local/bin"


def test_extra_path_goes_first():
    path = ensure_standard_paths("", extra_path="/opt/a:/opt/b")
    assert path.split(os.pathsep)[:2] == ["/opt/a", "/opt/b"]


def test_complete_path_unchanged():
    full = os.pathsep.join(STANDARD_PATHS)
    assert ensure_standard_paths(full) == full


def test_ensure_socket_dir_is_private(tmp_path):
    target = tmp_path / "socks"
    ensure_socket_dir(str(target))
    assert target.is_dir()
    assert stat.S_IMODE(target.stat().st_mode) & 0o077 == 0


def test_truncate_for_log():
    assert truncate_for_log("short", 10) == "short"
    shortened = truncate_for_log("x" * 50, 10)
    assert shortened.startswith("(50 chars) xxxxxxxxxx")
    assert shortened.endswith("...[truncated]")


def test_json_line_appends(tmp_path):
    path = tmp_path / "log.jsonl"
    json_line(str(path), {"a": 1})
    json_line(str(path), {"b": "ü"})
    lines = path.read_text(encoding="utf-8").splitlines()
    assert [json.loads(line) for line in lines] == [{"a": 1}, {"b": "ü"}]


def test_json_line_ignores_empty_path_and_bad_dir(tmp_path):
    json_line("", {"a": 1})
    json_line(str(tmp_path / "missing" / "log.jsonl"), {"a": 1})


def test_resolve_runtime_paths_with_cache_override(tmp_path, monkeypatch):
    monkeypatch.delenv("BASH_MCP_CACHE_DIR", raising=False)
    project = tmp_path / "my project"
    paths = resolve_runtime_paths(str(project), str(tmp_path / "cache"))
    assert paths["project_tag"] == "my_project"
    assert paths["cache_root"].startswith(str(tmp_path / "cache" / "my_project-"))

    default = resolve_runtime_paths(str(project), None)
    assert default["cache_root"] == str(project / ".bash-mcp-cache")


def test_to_bool_and_clamp():
    assert to_bool("yes") is True
    assert to_bool("off") is False
    assert to_bool("maybe", default=True) is True
    assert clamp_int("12", 5, 1, 10) == 10
    assert clamp_int("x", 5, 1, 10) == 5
