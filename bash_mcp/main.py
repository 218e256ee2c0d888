import os
import sys
import signal
import argparse
from typing import List, Optional
from bash_mcp.config import ServerConfig, ConfigError, load_config, SERVER_VERSION
from bash_mcp.utils import (
    log_error, resolve_runtime_paths, make_cache_dirs, build_shell_env, ensure_socket_dir
)
from bash_mcp.bash import SessionManager
from bash_mcp.server import McpServer, register_handlers
from bash_mcp.transport import StdioTransport


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Bash MCP Server (persistent shell session over stdio JSON-RPC)"
    )
    parser.add_argument("--config", help="Path to config.json (default: next to the executable, then cwd)")
    parser.add_argument("--timeout", type=int, help="Command timeout in seconds (overrides config and BASH_MCP_TIMEOUT)")
    parser.add_argument("--path", help="Additional PATH entries for the shell (overrides BASH_MCP_PATH)")
    parser.add_argument("--socket-dir", help="Socket directory advertised to nested tools")
    parser.add_argument("--project-root", help="Project root for local state")
    parser.add_argument("--cache-dir", help="Optional cache root override")
    return parser


def build_config(args: argparse.Namespace) -> ServerConfig:
    config = load_config(
        ServerConfig(),
        explicit_path=args.config,
        script_path=sys.argv[0] if sys.argv else "",
        cwd=os.getcwd(),
    )

    # Apply args over file and env
    if args.timeout is not None: config.COMMAND_TIMEOUT = args.timeout
    if args.path: config.EXTRA_PATH = args.path
    if args.socket_dir: config.SOCKET_DIR = args.socket_dir

    config.validate()

    runtime_paths = resolve_runtime_paths(project_root_arg=args.project_root, cache_dir_arg=args.cache_dir)
    config.PROJECT_ROOT = runtime_paths["project_root"]
    config.PROJECT_TAG = runtime_paths["project_tag"]
    config.CACHE_DIRS = make_cache_dirs(runtime_paths["cache_root"])
    return config


def build_manager(config: ServerConfig) -> SessionManager:
    ensure_socket_dir(config.SOCKET_DIR)
    env = build_shell_env(dict(os.environ), config.SOCKET_DIR, config.EXTRA_PATH)
    return SessionManager(
        timeout=config.COMMAND_TIMEOUT,
        env=env,
        socket_dir=config.SOCKET_DIR,
        cache_dirs=config.CACHE_DIRS,
        project_tag=config.PROJECT_TAG,
    )


def _raise_exit(signum, frame) -> None:
    raise SystemExit(0)


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        config = build_config(args)
    except (ConfigError, OSError) as exc:
        log_error(f"Error loading configuration: {exc}")
        return 1

    manager = build_manager(config)
    server = register_handlers(McpServer(), manager)
    transport = StdioTransport()

    signal.signal(signal.SIGTERM, _raise_exit)
    signal.signal(signal.SIGINT, _raise_exit)

    log_error(
        f"Bash MCP Server v{SERVER_VERSION} started in STDIO mode. "
        f"timeout={config.COMMAND_TIMEOUT}s config={config.CONFIG_PATH or '-'} "
        f"cache={config.CACHE_DIRS['cache_root']}"
    )

    try:
        transport.serve(server.handle_request)
        # stdin is gone but requests already read still get their replies
        transport.wait_for_tasks()
    finally:
        log_error("shutting down...")
        manager.shutdown()
    return 0


if __name__ == "__main__":
    sys.exit(main())
