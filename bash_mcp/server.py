import json
import threading
from typing import Any, Callable, Dict, Optional, Tuple
from bash_mcp.config import (
    SERVER_NAME, SERVER_VERSION, DEFAULT_PROTOCOL_VERSION, NOTIFICATION_PREFIX,
    MAX_LOG_RESPONSE_CHARS, MAX_LOG_FRAME_CHARS, ERR_NOT_INITIALIZED, ERR_METHOD_NOT_FOUND,
    ERR_INVALID_PARAMS, ERR_INVALID_REQUEST, ERR_HANDLER
)
from bash_mcp.utils import log_error, to_bool, truncate_for_log

RequestHandler = Callable[[Any], Dict[str, Any]]
NotificationHandler = Callable[[Any], None]


class RpcError(Exception):
    def __init__(self, code: int, message: str):
        super().__init__(message)
        self.code = code
        self.message = message


BASH_TOOL = {
    "name": "bash",
    "description": (
        "Execute bash commands in a persistent session. Commands are executed in a stateful bash "
        "environment where environment variables, working directory changes, and other session state "
        "persist between calls. Long-running commands time out after the configured command timeout. "
        "Use 'restart: true' to start a fresh session if needed. "
        "Supports: pipelines, environment variables, cd commands, command chaining with && or ||, "
        "background processes, file I/O redirection, and most bash built-ins. "
        "Avoid: interactive commands (vim, less, top), commands requiring user input, sudo without NOPASSWD."
    ),
    "inputSchema": {
        "type": "object",
        "properties": {
            "command": {"type": "string", "description": "The bash command to execute"},
            "restart": {
                "type": "boolean",
                "description": "Set to true to restart the bash session before executing the command",
            },
        },
        "required": ["command"],
    },
}

TOOLS = {BASH_TOOL["name"]: BASH_TOOL}


def format_tool_result(text: str, is_error: bool = False) -> Dict[str, Any]:
    if not is_error:
        return {"content": [{"type": "text", "text": text}]}
    return {"content": [{"type": "text", "text": text}], "isError": True}


def tool_error(message: str) -> Dict[str, Any]:
    return format_tool_result(f"Error: {message}", is_error=True)


def make_response(req_id: Any, result: Dict[str, Any]) -> Dict[str, Any]:
    return {"jsonrpc": "2.0", "id": req_id, "result": result}


def make_error(req_id: Any, code: int, message: str) -> Dict[str, Any]:
    return {"jsonrpc": "2.0", "id": req_id, "error": {"code": code, "message": message}}


def tools_list(params: Any = None) -> Dict[str, Any]:
    return {"tools": list(TOOLS.values())}


def parse_bash_args(args: Any) -> Tuple[str, bool, str]:
    """Return (command, restart, error); error is empty when the args are usable."""
    if args is None:
        args = {}
    if not isinstance(args, dict):
        return "", False, "invalid arguments for bash tool: expected an object"
    command = args.get("command")
    if command is not None and not isinstance(command, str):
        return "", False, "invalid arguments for bash tool: command must be a string"
    if not command:
        return "", False, "command parameter is required"
    return command, to_bool(args.get("restart"), default=False), ""


def bash_dispatch(args: Any, manager) -> Dict[str, Any]:
    command, restart, error = parse_bash_args(args)
    if error:
        return tool_error(error)

    if restart:
        restarted = manager.restart_session()
        if not restarted.get("success"):
            return tool_error(f"Failed to restart session: {restarted.get('error', 'unknown error')}")
        log_error("Bash session restarted")

    log_error(f"Executing command: {truncate_for_log(command, MAX_LOG_FRAME_CHARS)}")
    result = manager.execute_command(command)
    if not result.get("success"):
        return tool_error(f"Command execution failed: {result.get('error', 'unknown error')}")
    return format_tool_result(result.get("output", ""))


def tool_call_dispatch(params: Any, manager) -> Dict[str, Any]:
    if not isinstance(params, dict):
        raise RpcError(ERR_INVALID_PARAMS, "invalid call parameters: expected an object")
    tool_name = params.get("name")
    args = params.get("arguments")
    if tool_name == "bash":
        return bash_dispatch(args, manager)
    return tool_error(f"Unknown tool: {tool_name}")


class McpServer:
    """Routes JSON-RPC frames to handlers and tracks the initialize handshake."""

    def __init__(self, name: str = SERVER_NAME, version: str = SERVER_VERSION):
        self.name = name
        self.version = version
        self.handlers: Dict[str, RequestHandler] = {}
        self.notification_handlers: Dict[str, NotificationHandler] = {}
        self.handlers_lock = threading.Lock()
        self.initialized = threading.Event()

    def set_request_handler(self, method: str, handler: RequestHandler) -> None:
        with self.handlers_lock:
            self.handlers[method] = handler

    def set_notification_handler(self, method: str, handler: NotificationHandler) -> None:
        with self.handlers_lock:
            self.notification_handlers[method] = handler

    def get_handler(self, method: str) -> Optional[RequestHandler]:
        with self.handlers_lock:
            return self.handlers.get(method)

    def handle_request(self, request: Any) -> Optional[Dict[str, Any]]:
        """Return the response frame, or None when nothing must be sent back."""
        if not isinstance(request, dict):
            log_error("dropping frame that is not a JSON object")
            return None

        has_id = "id" in request
        req_id = request.get("id")
        method = request.get("method")
        params = request.get("params")

        if not isinstance(method, str) or not method:
            log_error(f"frame without method (id={req_id})")
            return make_error(req_id, ERR_INVALID_REQUEST, "Invalid request: missing method") if has_id else None

        log_error(f"Handling method: {method}, ID: {req_id}")
        response = self._route(method, req_id, params)
        if not has_id:
            # notifications never get a reply, whatever the method
            return None
        if response is not None:
            log_error(f"Response: {truncate_for_log(json.dumps(response, ensure_ascii=False), MAX_LOG_RESPONSE_CHARS)}")
        return response

    def _route(self, method: str, req_id: Any, params: Any) -> Optional[Dict[str, Any]]:
        if method == "initialize":
            return self._handle_initialize(req_id, params)

        if method in ("notifications/initialized", "initialized"):
            log_error("Received initialized notification, server is ready")
            self.initialized.set()
            return None

        if method.startswith(NOTIFICATION_PREFIX):
            self._handle_notification(method, params)
            return None

        if not self.initialized.is_set() and method != "ping":
            log_error(f"Rejecting request {method} because server is not initialized")
            return make_error(req_id, ERR_NOT_INITIALIZED, "Server not initialized")

        handler = self.get_handler(method)
        if handler is None:
            log_error(f"Method not supported: {method}")
            return make_error(req_id, ERR_METHOD_NOT_FOUND, f"Method not supported: {method}")

        try:
            result = handler(params)
        except RpcError as exc:
            log_error(f"Handler error for method {method}: {exc.message}")
            return make_error(req_id, exc.code, exc.message)
        except Exception as exc:
            log_error(f"Handler error for method {method}: {exc}")
            return make_error(req_id, ERR_HANDLER, str(exc))
        return make_response(req_id, result)

    def _handle_notification(self, method: str, params: Any) -> None:
        with self.handlers_lock:
            handler = self.notification_handlers.get(method)
        if handler is None:
            log_error(f"Received notification: {method}")
            return
        try:
            handler(params)
        except Exception as exc:
            log_error(f"Notification handler error for {method}: {exc}")

    def _handle_initialize(self, req_id: Any, params: Any) -> Dict[str, Any]:
        if params is None:
            params = {}
        if not isinstance(params, dict):
            log_error("Invalid initialize parameters")
            return make_error(req_id, ERR_INVALID_PARAMS, "Invalid initialize parameters")

        client_info = params.get("clientInfo") or {}
        if isinstance(client_info, dict):
            log_error(f"Client info: {client_info.get('name', '')} {client_info.get('version', '')}")
        protocol_version = params.get("protocolVersion") or DEFAULT_PROTOCOL_VERSION
        if not isinstance(protocol_version, str):
            return make_error(req_id, ERR_INVALID_PARAMS, "Invalid initialize parameters")

        self.initialized.set()
        return make_response(
            req_id,
            {
                "protocolVersion": protocol_version,
                "capabilities": {"tools": {}},
                "serverInfo": {"name": self.name, "version": self.version},
            },
        )


def log_cancelled(params: Any) -> None:
    if not isinstance(params, dict):
        params = {}
    log_error(
        f"Client cancelled request {params.get('requestId')}"
        + (f": {params['reason']}" if params.get("reason") else "")
    )


def register_handlers(server: McpServer, manager) -> McpServer:
    server.set_request_handler("ping", lambda params: {})
    server.set_request_handler("tools/list", tools_list)
    server.set_request_handler("tools/call", lambda params: tool_call_dispatch(params, manager))
    # pre-2024 method names
    server.set_request_handler("list_tools", lambda params: server.get_handler("tools/list")(params))
    server.set_request_handler("call_tool", lambda params: server.get_handler("tools/call")(params))
    server.set_notification_handler("notifications/cancelled", log_cancelled)
    return server
