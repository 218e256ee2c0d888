import os
import json
from typing import Any, Dict, Optional

# ========= Static config =========
SERVER_NAME = "bash-mcp-server"
SERVER_VERSION = "1.0.0"
DEFAULT_PROTOCOL_VERSION = "2024-11-05"

DEFAULT_COMMAND_TIMEOUT = 600  # seconds
MIN_COMMAND_TIMEOUT = 1
MAX_COMMAND_TIMEOUT = 86400

SCAN_BUFFER_SIZE = 1024 * 1024  # longest single read from a pipe
MAX_OUTPUT_SIZE = 512 * 1024  # captured stdout per command
MAX_STDERR_SIZE = 512 * 1024  # captured stderr per command

STDERR_GRACE_DELAY = 0.05
DRAINER_JOIN_TIMEOUT = 2.0
PROCESS_REAP_TIMEOUT = 5.0
SHELL_EXIT_WAIT = 1.0
PIPE_POLL_INTERVAL = 0.1

MAX_LOG_FRAME_CHARS = 200
MAX_LOG_RESPONSE_CHARS = 500

MARKER_PREFIX = "__BASH_CMD_DONE_"
NOTIFICATION_PREFIX = "notifications/"

SHELL_COMMAND = ["bash"]
DEFAULT_SOCKET_DIR = "/tmp/mcp-sockets"
STANDARD_PATHS = [
    "/usr/local/bin",
    "/usr/bin",
    "/bin",
    "/usr/local/sbin",
    "/usr/sbin",
    "/sbin",
]

CONFIG_FILE_NAME = "config.json"

# ========= JSON-RPC error codes =========
ERR_NOT_INITIALIZED = -32002
ERR_METHOD_NOT_FOUND = -32601
ERR_INVALID_PARAMS = -32602
ERR_INVALID_REQUEST = -32600
ERR_HANDLER = -32000
ERR_INTERNAL = -32603


class ConfigError(Exception):
    pass


# ========= Runtime Configuration =========
class ServerConfig:
    def __init__(self):
        self.COMMAND_TIMEOUT: int = DEFAULT_COMMAND_TIMEOUT
        self.ENABLED: bool = True
        self.EXTRA_PATH: Optional[str] = None
        self.SOCKET_DIR: str = DEFAULT_SOCKET_DIR
        self.CONFIG_PATH: str = ""
        self.PROJECT_ROOT: str = ""
        self.PROJECT_TAG: str = ""
        self.CACHE_DIRS: Dict[str, str] = {}

    def load_file(self, path: str) -> None:
        try:
            with open(path, "r", encoding="utf-8") as handle:
                data = json.load(handle)
        except OSError as exc:
            raise ConfigError(f"failed to read config file {path}: {exc}") from exc
        except json.JSONDecodeError as exc:
            raise ConfigError(f"failed to parse config file {path}: {exc}") from exc
        if not isinstance(data, dict):
            raise ConfigError(f"config file {path} must contain a JSON object")

        self.CONFIG_PATH = path
        self.apply_values(data.get("commandTimeout"), data.get("enabled"))

    def load_from_env(self) -> None:
        self.apply_values(os.environ.get("BASH_MCP_TIMEOUT"), os.environ.get("BASH_MCP_ENABLED"))
        self.EXTRA_PATH = os.environ.get("BASH_MCP_PATH", self.EXTRA_PATH)
        self.SOCKET_DIR = os.environ.get("BASH_MCP_SOCKET_DIR", self.SOCKET_DIR)

    def apply_values(self, timeout: Any, enabled: Any) -> None:
        from bash_mcp.utils import to_bool

        if timeout is not None:
            try:
                seconds = int(timeout)
            except (TypeError, ValueError) as exc:
                raise ConfigError(f"commandTimeout must be an integer, got {timeout!r}") from exc
            # 0 keeps the documented default
            self.COMMAND_TIMEOUT = seconds if seconds else DEFAULT_COMMAND_TIMEOUT
        if enabled is not None:
            self.ENABLED = to_bool(enabled, default=self.ENABLED)

    def validate(self) -> None:
        from bash_mcp.utils import clamp_int

        if not self.ENABLED:
            raise ConfigError("bash tool is disabled in configuration")
        self.COMMAND_TIMEOUT = clamp_int(
            self.COMMAND_TIMEOUT, DEFAULT_COMMAND_TIMEOUT, MIN_COMMAND_TIMEOUT, MAX_COMMAND_TIMEOUT
        )


def config_candidates(script_path: str, cwd: str) -> list:
    script_dir = os.path.dirname(os.path.realpath(script_path)) if script_path else cwd
    candidates = [os.path.join(script_dir, CONFIG_FILE_NAME)]
    cwd_candidate = os.path.join(cwd, CONFIG_FILE_NAME)
    if cwd_candidate not in candidates:
        candidates.append(cwd_candidate)
    return candidates


def write_default_config(path: str) -> None:
    payload = {"commandTimeout": DEFAULT_COMMAND_TIMEOUT, "enabled": True}
    try:
        with open(path, "w", encoding="utf-8") as handle:
            handle.write(json.dumps(payload, indent=2) + "\n")
    except OSError as exc:
        raise ConfigError(f"failed to write default config file {path}: {exc}") from exc


def load_config(
    config: ServerConfig,
    explicit_path: Optional[str],
    script_path: str,
    cwd: str,
) -> ServerConfig:
    """Layer the config file and environment over the defaults.

    An explicit path must exist. Otherwise the first existing candidate is
    used, and when none exists a default file is written at the first one.
    """
    from bash_mcp.utils import log_error

    if explicit_path:
        if not os.path.isfile(explicit_path):
            raise ConfigError(f"config file not found: {explicit_path}")
        config.load_file(explicit_path)
    else:
        candidates = config_candidates(script_path, cwd)
        found = next((path for path in candidates if os.path.isfile(path)), None)
        if found:
            log_error(f"reading config from {found}")
            config.load_file(found)
        else:
            created = None
            for path in candidates:
                try:
                    write_default_config(path)
                except ConfigError as exc:
                    log_error(str(exc))
                    continue
                created = path
                break
            if created:
                log_error(f"no config file found, created default at {created}")
                config.CONFIG_PATH = created
            else:
                log_error("no config file found, using built-in defaults")

    config.load_from_env()
    return config
