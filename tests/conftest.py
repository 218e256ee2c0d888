import os

import pytest

from bash_mcp.bash import BashSession, SessionManager
from bash_mcp.utils import build_shell_env


@pytest.fixture
def socket_dir(tmp_path) -> str:
    return str(tmp_path / "sockets")


@pytest.fixture
def shell_env(socket_dir):
    return build_shell_env(dict(os.environ), socket_dir)


@pytest.fixture
def session(shell_env):
    s = BashSession(1, env=shell_env)
    assert s.start()
    yield s
    s.close()


@pytest.fixture
def manager(shell_env, socket_dir):
    m = SessionManager(timeout=10, env=shell_env, socket_dir=socket_dir)
    yield m
    m.shutdown()
