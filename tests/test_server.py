import pytest

from bash_mcp.server import McpServer, register_handlers, parse_bash_args, RpcError, BASH_TOOL


class FakeManager:
    def __init__(self, execute_result=None, restart_result=None):
        self.execute_result = execute_result or {"success": True, "output": "ok"}
        self.restart_result = restart_result or {"success": True, "session_id": 2}
        self.commands = []
        self.restarts = 0

    def execute_command(self, command):
        self.commands.append(command)
        return self.execute_result

    def restart_session(self):
        self.restarts += 1
        return self.restart_result


def request(method, req_id=1, params=None):
    frame = {"jsonrpc": "2.0", "id": req_id, "method": method}
    if params is not None:
        frame["params"] = params
    return frame


def notification(method, params=None):
    frame = {"jsonrpc": "2.0", "method": method}
    if params is not None:
        frame["params"] = params
    return frame


def make_server(manager=None, initialized=True):
    server = register_handlers(McpServer(), manager or FakeManager())
    if initialized:
        server.handle_request(request("initialize", 0, {"protocolVersion": "2024-11-05"}))
    return server


def call_bash(server, arguments, req_id=5):
    response = server.handle_request(request("tools/call", req_id, {"name": "bash", "arguments": arguments}))
    return response["result"]


def test_initialize_echoes_protocol_version():
    server = make_server(initialized=False)
    response = server.handle_request(
        request("initialize", 1, {"protocolVersion": "2025-03-26", "clientInfo": {"name": "t", "version": "1"}})
    )
    assert response["id"] == 1
    assert response["result"]["protocolVersion"] == "2025-03-26"
    assert response["result"]["capabilities"] == {"tools": {}}
    assert response["result"]["serverInfo"]["name"] == "bash-mcp-server"
    assert server.initialized.is_set()


def test_initialize_defaults_protocol_version():
    server = make_server(initialized=False)
    response = server.handle_request(request("initialize", 1, {}))
    assert response["result"]["protocolVersion"] == "2024-11-05"


def test_initialize_rejects_bad_params():
    server = make_server(initialized=False)
    response = server.handle_request(request("initialize", 1, ["not", "an", "object"]))
    assert response["error"]["code"] == -32602
    assert not server.initialized.is_set()


def test_requests_before_initialize_are_rejected():
    server = make_server(initialized=False)
    response = server.handle_request(request("tools/list", 7))
    assert response == {"jsonrpc": "2.0", "id": 7, "error": {"code": -32002, "message": "Server not initialized"}}


def test_ping_allowed_before_initialize():
    server = make_server(initialized=False)
    assert server.handle_request(request("ping", 3)) == {"jsonrpc": "2.0", "id": 3, "result": {}}


@pytest.mark.parametrize("method", ["notifications/initialized", "initialized"])
def test_initialized_notification_marks_ready(method):
    server = make_server(initialized=False)
    assert server.handle_request(notification(method)) is None
    assert server.initialized.is_set()
    assert "result" in server.handle_request(request("tools/list", 2))


@pytest.mark.parametrize("initialized", [True, False])
@pytest.mark.parametrize(
    "method",
    ["notifications/initialized", "notifications/cancelled", "notifications/progress", "notifications/unknown"],
)
def test_notifications_never_answered(method, initialized):
    server = make_server(initialized=initialized)
    assert server.handle_request(notification(method, {"requestId": 1})) is None


def test_notification_prefix_never_answered_even_with_id():
    server = make_server()
    assert server.handle_request(request("notifications/custom", 9)) is None


def test_request_without_id_gets_no_response():
    manager = FakeManager()
    server = make_server(manager)
    frame = notification("tools/call", {"name": "bash", "arguments": {"command": "echo hi"}})
    assert server.handle_request(frame) is None
    assert manager.commands == ["echo hi"]


def test_registered_notification_handler_runs():
    server = make_server()
    seen = []
    server.set_notification_handler("notifications/custom", seen.append)
    assert server.handle_request(notification("notifications/custom", {"x": 1})) is None
    assert seen == [{"x": 1}]


def test_notification_handler_error_is_contained():
    server = make_server()

    def boom(params):
        raise RuntimeError("boom")

    server.set_notification_handler("notifications/custom", boom)
    assert server.handle_request(notification("notifications/custom")) is None


def test_unknown_method():
    server = make_server()
    response = server.handle_request(request("resources/list", 4))
    assert response["error"]["code"] == -32601


def test_handler_exception_becomes_handler_error():
    server = make_server()

    def broken(params):
        raise ValueError("nope")

    server.set_request_handler("broken", broken)
    response = server.handle_request(request("broken", 4))
    assert response["error"] == {"code": -32000, "message": "nope"}


def test_rpc_error_keeps_its_code():
    server = make_server()

    def invalid(params):
        raise RpcError(-32602, "bad params")

    server.set_request_handler("strict", invalid)
    assert server.handle_request(request("strict", 4))["error"]["code"] == -32602


def test_missing_method_is_invalid_request():
    server = make_server()
    response = server.handle_request({"jsonrpc": "2.0", "id": 8})
    assert response["error"]["code"] == -32600
    assert server.handle_request({"jsonrpc": "2.0"}) is None


def test_tools_list_and_alias():
    server = make_server()
    for method in ("tools/list", "list_tools"):
        response = server.handle_request(request(method, 2))
        assert response["result"]["tools"] == [BASH_TOOL]


def test_tools_call_requires_object_params():
    server = make_server()
    response = server.handle_request(request("tools/call", 2, "echo hi"))
    assert response["error"]["code"] == -32602


def test_bash_tool_success():
    manager = FakeManager(execute_result={"success": True, "output": "hi"})
    server = make_server(manager)
    assert call_bash(server, {"command": "echo hi"}) == {"content": [{"type": "text", "text": "hi"}]}
    assert manager.commands == ["echo hi"]
    assert manager.restarts == 0


def test_call_tool_alias():
    manager = FakeManager()
    server = make_server(manager)
    response = server.handle_request(request("call_tool", 6, {"name": "bash", "arguments": {"command": "ls"}}))
    assert response["result"]["content"][0]["text"] == "ok"


def test_bash_tool_restart_first():
    manager = FakeManager()
    server = make_server(manager)
    call_bash(server, {"command": "pwd", "restart": True})
    assert manager.restarts == 1
    assert manager.commands == ["pwd"]


def test_bash_tool_restart_failure():
    manager = FakeManager(restart_result={"success": False, "error": "no bash"})
    server = make_server(manager)
    result = call_bash(server, {"command": "pwd", "restart": True})
    assert result["isError"] is True
    assert result["content"][0]["text"] == "Error: Failed to restart session: no bash"
    assert manager.commands == []


def test_bash_tool_execution_failure_is_content():
    manager = FakeManager(execute_result={"success": False, "error": "command timed out after 1s"})
    server = make_server(manager)
    result = call_bash(server, {"command": "sleep 5"})
    assert result["isError"] is True
    assert result["content"][0]["text"] == "Error: Command execution failed: command timed out after 1s"


def test_bash_tool_missing_command():
    server = make_server()
    result = call_bash(server, {})
    assert result["isError"] is True
    assert result["content"][0]["text"] == "Error: command parameter is required"


def test_unknown_tool_is_content_error():
    server = make_server()
    response = server.handle_request(request("tools/call", 3, {"name": "python", "arguments": {}}))
    assert response["result"]["content"][0]["text"] == "Error: Unknown tool: python"
    assert response["result"]["isError"] is True


@pytest.mark.parametrize(
    "args, expected",
    [
        ({"command": "ls"}, ("ls", False, "")),
        ({"command": "ls", "restart": "true"}, ("ls", True, "")),
        ({"command": "ls", "restart": 0}, ("ls", False, "")),
        ({"command": ""}, ("", False, "command parameter is required")),
        (None, ("", False, "command parameter is required")),
    ],
)
def test_parse_bash_args(args, expected):
    assert parse_bash_args(args) == expected


def test_parse_bash_args_rejects_non_object():
    command, restart, error = parse_bash_args(["ls"])
    assert error.startswith("invalid arguments for bash tool")
    command, restart, error = parse_bash_args({"command": 5})
    assert error.startswith("invalid arguments for bash tool")
