import os
import re
import sys
import json
import hashlib
from datetime import datetime
from typing import Any, Dict, Optional, List
from bash_mcp.config import STANDARD_PATHS


def log_error(message: str) -> None:
    print(f"[BASH-MCP] {message}", file=sys.stderr, flush=True)


def clamp_int(value: Any, default: int, min_value: int, max_value: int) -> int:
    try:
        numeric = int(value)
    except Exception:
        numeric = default
    if numeric < min_value:
        return min_value
    if numeric > max_value:
        return max_value
    return numeric


def to_bool(value: Any, default: bool = False) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return bool(value)
    s = str(value).lower().strip()
    if s in ("true", "1", "yes", "on"):
        return True
    if s in ("false", "0", "no", "off"):
        return False
    return default


def iso_now() -> str:
    return datetime.now().isoformat(timespec="milliseconds")


def safe_name(text: str) -> str:
    cleaned = re.sub(r"[^a-zA-Z0-9._-]+", "_", text.strip())
    return cleaned[:80] if cleaned else "unnamed"


def truncate_for_log(text: str, limit: int) -> str:
    if len(text) <= limit:
        return text
    return f"({len(text)} chars) {text[:limit]}...[truncated]"


def json_line(path: str, payload: Dict[str, Any]) -> None:
    if not path:
        return
    try:
        with open(path, "a", encoding="utf-8") as handle:
            handle.write(json.dumps(payload, ensure_ascii=False) + "\n")
    except Exception as exc:
        log_error(f"log write failed ({path}): {exc}")


def make_cache_dirs(cache_root: str) -> Dict[str, str]:
    sessions_dir = os.path.join(cache_root, "sessions")
    os.makedirs(sessions_dir, exist_ok=True)
    return {
        "cache_root": cache_root,
        "sessions_dir": sessions_dir,
    }


def resolve_runtime_paths(
    project_root_arg: Optional[str],
    cache_dir_arg: Optional[str],
) -> Dict[str, str]:
    project_root = os.path.abspath(project_root_arg or os.getcwd())
    project_tag = safe_name(os.path.basename(project_root))
    project_hash = hashlib.sha1(project_root.encode("utf-8")).hexdigest()[:8]
    project_ns = f"{project_tag}-{project_hash}"
    cache_override = cache_dir_arg or os.environ.get("BASH_MCP_CACHE_DIR")
    if cache_override:
        cache_root = os.path.join(os.path.abspath(cache_override), project_ns)
    else:
        cache_root = os.path.join(project_root, ".bash-mcp-cache")
    return {
        "project_root": project_root,
        "project_tag": project_tag,
        "cache_root": cache_root,
    }


def ensure_standard_paths(current_path: str, extra_path: Optional[str] = None) -> str:
    existing = [p for p in current_path.split(os.pathsep) if p]
    seen = set(existing)
    to_add: List[str] = []
    if extra_path:
        for p in extra_path.split(os.pathsep):
            if p and p not in seen:
                to_add.append(p)
                seen.add(p)
    for p in STANDARD_PATHS:
        if p not in seen:
            to_add.append(p)
            seen.add(p)
    # added entries go first so standard locations take precedence
    return os.pathsep.join(to_add + existing)


def build_shell_env(
    base_env: Dict[str, str],
    socket_dir: str,
    extra_path: Optional[str] = None,
) -> Dict[str, str]:
    """Environment for a spawned shell; ``base_env`` is copied, never mutated.

    Adds the nested-invocation variables that tools run inside the shell use
    to reach the socket directory instead of contending for our stdio.
    """
    env = dict(base_env)
    env["PATH"] = ensure_standard_paths(env.get("PATH", ""), extra_path)
    env["MCP_NESTED"] = "1"
    env["MCP_SOCKET_DIR"] = socket_dir
    env["MCP_SKILLS_SOCKET"] = os.path.join(socket_dir, "skills.sock")
    return env


def ensure_socket_dir(socket_dir: str) -> None:
    try:
        os.makedirs(socket_dir, mode=0o700, exist_ok=True)
    except OSError as exc:
        log_error(f"failed to create socket dir {socket_dir}: {exc}")
