import os
import time
import select
import signal
import threading
import subprocess
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Optional

from bash_mcp.config import (
    SHELL_COMMAND, SCAN_BUFFER_SIZE, MAX_OUTPUT_SIZE, MAX_STDERR_SIZE, MARKER_PREFIX,
    STDERR_GRACE_DELAY, DRAINER_JOIN_TIMEOUT, PROCESS_REAP_TIMEOUT, SHELL_EXIT_WAIT,
    PIPE_POLL_INTERVAL, DEFAULT_COMMAND_TIMEOUT, DEFAULT_SOCKET_DIR
)
from bash_mcp.utils import (
    log_error, iso_now, json_line, build_shell_env, ensure_socket_dir
)


def truncation_notice(limit: int) -> str:
    return f"\n... [output truncated at {limit} bytes] ..."


def new_marker() -> str:
    return f"{MARKER_PREFIX}{time.time_ns()}__"


def read_available(fd: int, stop: threading.Event, size: int = SCAN_BUFFER_SIZE) -> Optional[bytes]:
    """Wait until ``fd`` has data and read it.

    Returns None once ``stop`` is set and b"" at end of stream. A pipe that an
    escaped child keeps open only ends through ``stop``.
    """
    while not stop.is_set():
        ready, _, _ = select.select([fd], [], [], PIPE_POLL_INTERVAL)
        if ready:
            return os.read(fd, size)
    return None


@dataclass
class PendingCommand:
    command: str
    marker: str
    deadline: float
    max_output: int = MAX_OUTPUT_SIZE

    lock: threading.Lock = field(default_factory=threading.Lock)
    done_event: threading.Event = field(default_factory=threading.Event)
    cancel_event: threading.Event = field(default_factory=threading.Event)
    status: str = "running"
    error: str = ""
    exit_code: Optional[str] = None
    output: bytearray = field(default_factory=bytearray)
    truncated: bool = False

    def append_output(self, chunk: bytes) -> None:
        if not chunk:
            return
        with self.lock:
            if self.truncated:
                return
            room = self.max_output - len(self.output)
            if len(chunk) <= room:
                self.output += chunk
                return
            # keep reading after the cap so the stream stays framed
            self.output += chunk[:max(0, room)]
            self.truncated = True

    def mark_done(self, status: str, exit_code: Optional[str] = None, error: str = "") -> None:
        with self.lock:
            if self.done_event.is_set():
                return
            self.status = status
            self.exit_code = exit_code
            self.error = error
            self.done_event.set()

    def render(self, exit_code: Optional[str] = None) -> str:
        with self.lock:
            text = bytes(self.output).decode("utf-8", errors="replace")
            truncated = self.truncated
        if truncated:
            text += truncation_notice(self.max_output)
        else:
            text = text.rstrip("\n")
        if exit_code is not None and exit_code != "0":
            annotation = f"[Exit code: {exit_code}]"
            text = f"{text}\n{annotation}" if text else annotation
        return text


def split_marker_line(line: bytes, marker: bytes) -> Optional[tuple]:
    """Return (leading_output, exit_code) if ``line`` carries the marker.

    The marker normally starts the line. It can also follow unterminated
    output such as ``printf hi``, so the last occurrence followed by digits
    is accepted anywhere on the line.
    """
    idx = line.rfind(marker)
    if idx < 0:
        return None
    code = line[idx + len(marker):].strip()
    if code.startswith(b"-"):
        digits = code[1:]
    else:
        digits = code
    if not digits.isdigit():
        return None
    return line[:idx], code.decode("ascii")


class BashSession:
    def __init__(
        self,
        session_id: int,
        env: Dict[str, str],
        cache_dirs: Optional[Dict[str, str]] = None,
        project_tag: str = "",
        max_output: int = MAX_OUTPUT_SIZE,
        max_stderr: int = MAX_STDERR_SIZE,
    ):
        self.id = session_id
        self.env = env
        self.cache_dirs = cache_dirs or {}
        self.project_tag = project_tag
        self.max_output = max_output
        self.max_stderr = max_stderr

        self.process: Optional[subprocess.Popen] = None
        self.running = False
        self.created_at = datetime.now()
        self.death_reason = ""
        self.last_command = ""

        # execution lock: one command at a time against this shell
        self.lock = threading.Lock()
        # close is idempotent and may run while a command is in flight
        self.close_lock = threading.Lock()
        self.closed = False
        self.signaled = False
        # tells both pipe readers to let go of their descriptors
        self.stop_event = threading.Event()

        self.stderr_lock = threading.Lock()
        self.stderr_buf = bytearray()
        self.stderr_partial = bytearray()
        self.drainer_thread: Optional[threading.Thread] = None
        self.reader_thread: Optional[threading.Thread] = None

        self.session_log_path = self._build_session_log_path()
        self._log_session("SYS", {"event": "session_created"})

    @property
    def pid(self) -> int:
        return self.process.pid if self.process is not None else 0

    def _build_session_log_path(self) -> str:
        sessions_dir = self.cache_dirs.get("sessions_dir")
        if not sessions_dir:
            return ""
        stamp = datetime.now().strftime("%Y%m%d_%H%M%S")
        filename = f"{self.project_tag or 'bash'}__s{self.id}__{stamp}.log"
        return os.path.join(sessions_dir, filename)

    def _log_session(self, direction: str, payload: Dict[str, Any]) -> None:
        data = {"ts": iso_now(), "dir": direction, "session_id": self.id}
        data.update(payload)
        json_line(self.session_log_path, data)

    def start(self) -> bool:
        try:
            self.process = subprocess.Popen(
                SHELL_COMMAND,
                stdin=subprocess.PIPE,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                env=self.env,
                start_new_session=True,
            )
        except OSError as exc:
            self.death_reason = f"spawn failed: {exc}"
            self._log_session("SYS", {"event": "spawn_failed", "error": str(exc)})
            return False

        self.running = True
        self.drainer_thread = threading.Thread(
            target=self._drain_stderr, name=f"bash-stderr-{self.id}", daemon=True
        )
        self.drainer_thread.start()
        log_error(f"Created new bash session (PID: {self.pid})")
        self._log_session("SYS", {"event": "spawned", "pid": self.pid})
        return True

    def _keep_stderr_line(self, line: bytes) -> None:
        # drop whole lines past the cap, keep what is already held
        if len(self.stderr_buf) + len(line) <= self.max_stderr:
            self.stderr_buf += line

    def _drain_stderr(self) -> None:
        fd = self.process.stderr.fileno()
        try:
            while True:
                chunk = read_available(fd, self.stop_event)
                if not chunk:
                    break
                with self.stderr_lock:
                    self.stderr_partial += chunk
                    while True:
                        end = self.stderr_partial.find(b"\n")
                        if end < 0:
                            if len(self.stderr_partial) < SCAN_BUFFER_SIZE:
                                break
                            end = SCAN_BUFFER_SIZE - 1
                        self._keep_stderr_line(bytes(self.stderr_partial[:end + 1]))
                        del self.stderr_partial[:end + 1]
        except (OSError, ValueError) as exc:
            log_error(f"stderr drainer error (session {self.id}): {exc}")
        with self.stderr_lock:
            if self.stderr_partial:
                self._keep_stderr_line(bytes(self.stderr_partial))
                self.stderr_partial.clear()

    def consume_stderr(self) -> str:
        with self.stderr_lock:
            data = bytes(self.stderr_buf)
            # an unterminated last line still belongs to this command
            if self.stderr_partial and len(data) + len(self.stderr_partial) <= self.max_stderr:
                data += bytes(self.stderr_partial)
            self.stderr_buf.clear()
            self.stderr_partial.clear()
        return data.decode("utf-8", errors="replace")

    def _scan_output(self, pending: PendingCommand) -> None:
        fd = self.process.stdout.fileno()
        marker = pending.marker.encode("ascii")
        # an unterminated tail may hold the start of the marker line
        tail_keep = len(marker) + 10
        buf = b""
        try:
            while not pending.cancel_event.is_set():
                chunk = read_available(fd, self.stop_event)
                if chunk is None:
                    pending.mark_done("failed", error="bash session was closed")
                    return
                if not chunk:
                    pending.append_output(buf)
                    pending.mark_done(
                        "eof", error="stdout closed before command completion marker was received"
                    )
                    return
                buf += chunk
                start = 0
                while True:
                    end = buf.find(b"\n", start)
                    if end < 0:
                        break
                    line = buf[start:end + 1]
                    start = end + 1
                    found = split_marker_line(line, marker)
                    if found is not None:
                        leading, code = found
                        if leading:
                            pending.append_output(leading + b"\n")
                        pending.mark_done("completed", exit_code=code)
                        return
                    pending.append_output(line)
                buf = buf[start:]
                if len(buf) > tail_keep:
                    pending.append_output(buf[:-tail_keep])
                    buf = buf[-tail_keep:]
        except (OSError, ValueError) as exc:
            pending.mark_done("failed", error=f"error reading output: {exc}")

    def execute(self, command: str, timeout: float) -> Dict[str, Any]:
        with self.lock:
            if not self.running:
                return {
                    "success": False,
                    "status": "dead",
                    "error": "bash session is not running",
                    "session_id": self.id,
                }

            # stderr from an earlier command must not bleed into this result
            self.consume_stderr()

            pending = PendingCommand(
                command=command,
                marker=new_marker(),
                deadline=time.monotonic() + timeout,
                max_output=self.max_output,
            )
            # lone surrogates are valid JSON but not valid UTF-8
            payload = f"{command}\necho '{pending.marker}'$?\n".encode("utf-8", errors="replace")
            self.last_command = command
            self._log_session("IN", {"event": "command_sent", "command": command, "timeout": timeout})

            try:
                self.process.stdin.write(payload)
                self.process.stdin.flush()
            except (OSError, ValueError) as exc:
                self.running = False
                self.death_reason = f"write failed: {exc}"
                self._log_session("SYS", {"event": "write_failed", "error": str(exc)})
                return {
                    "success": False,
                    "status": "dead",
                    "error": f"failed to write command: {exc}",
                    "session_id": self.id,
                }

            self.reader_thread = threading.Thread(
                target=self._scan_output, args=(pending,), name=f"bash-stdout-{self.id}", daemon=True
            )
            self.reader_thread.start()

            if not pending.done_event.wait(timeout):
                pending.cancel_event.set()
                self.running = False
                self.death_reason = "command timed out"
                self._log_session("SYS", {"event": "command_timeout", "timeout": timeout})
                # kill now so the abandoned reader hits EOF instead of blocking forever
                self.close()
                return {
                    "success": False,
                    "status": "timeout",
                    "error": f"command timed out after {format_seconds(timeout)}",
                    "session_id": self.id,
                }

            if pending.status != "completed":
                self.running = False
                return self._finish_without_marker(pending)

            output = pending.render(pending.exit_code)
            output = self._attach_stderr(output)
            self._log_session(
                "OUT",
                {
                    "event": "command_done",
                    "exit_code": pending.exit_code,
                    "truncated": pending.truncated,
                    "output_bytes": len(pending.output),
                },
            )
            return {
                "success": True,
                "status": "completed",
                "output": output,
                "exit_code": int(pending.exit_code),
                "truncated": pending.truncated,
                "session_id": self.id,
            }

    def _attach_stderr(self, output: str) -> str:
        # the drainer runs on its own thread, give it a moment to catch up
        time.sleep(STDERR_GRACE_DELAY)
        stderr_output = self.consume_stderr().rstrip("\n")
        if not stderr_output:
            return output
        section = f"STDERR:\n{stderr_output}"
        return f"{output}\n\n{section}" if output else section

    def _finish_without_marker(self, pending: PendingCommand) -> Dict[str, Any]:
        if self.closed:
            self.death_reason = "session closed during command"
            return {
                "success": False,
                "status": "dead",
                "error": "bash session was closed while the command was running",
                "session_id": self.id,
            }

        returncode = None
        if pending.status == "eof":
            try:
                returncode = self.process.wait(timeout=SHELL_EXIT_WAIT)
            except subprocess.TimeoutExpired:
                returncode = None

        if returncode is None:
            self.death_reason = pending.error
            self._log_session("SYS", {"event": "read_failed", "error": pending.error})
            return {
                "success": False,
                "status": "failed",
                "error": pending.error,
                "session_id": self.id,
            }

        # the command ended the shell itself (e.g. `exit 3`)
        self.death_reason = f"shell exited with code {returncode}"
        self._log_session("SYS", {"event": "shell_exited", "exit_code": returncode})
        output = self._attach_stderr(pending.render(str(returncode)))
        return {
            "success": True,
            "status": "shell_exited",
            "output": output,
            "exit_code": returncode,
            "truncated": pending.truncated,
            "session_id": self.id,
        }

    def _signal_group(self) -> None:
        if self.signaled or self.process is None:
            return
        self.signaled = True
        try:
            if not hasattr(os, "killpg"):
                self.process.kill()
                return
            if self.process.returncode is not None:
                # leader already reaped: the pgid stays ours only while members remain
                os.killpg(self.process.pid, 0)
            os.killpg(self.process.pid, signal.SIGKILL)
        except (ProcessLookupError, PermissionError):
            # group already gone; make sure the leader itself is signaled
            if self.process.poll() is None:
                self.process.kill()

    def close(self) -> None:
        """Kill and reap the shell, then release its pipes. Safe to repeat."""
        with self.close_lock:
            was_running = self.running
            first_close = not self.closed
            self.running = False
            self.closed = True
            if self.process is None:
                return

            self._signal_group()
            try:
                self.process.wait(timeout=PROCESS_REAP_TIMEOUT)
            except subprocess.TimeoutExpired:
                log_error(f"bash process {self.pid} did not exit after kill")

            self.stop_event.set()
            try:
                if self.process.stdin:
                    self.process.stdin.close()
            except (OSError, ValueError):
                pass

            readers = [t for t in (self.drainer_thread, self.reader_thread) if t is not None]
            for thread in readers:
                thread.join(DRAINER_JOIN_TIMEOUT)
            stuck = [t.name for t in readers if t.is_alive()]
            if stuck:
                # a reader still inside os.read must not see its fd reused
                log_error(f"Warning: pipe readers did not exit within timeout: {', '.join(stuck)}")
            else:
                for stream in (self.process.stdout, self.process.stderr):
                    try:
                        if stream:
                            stream.close()
                    except (OSError, ValueError):
                        pass

            if not first_close:
                return
            if was_running:
                log_error(f"Closed bash session (PID: {self.pid})")
            else:
                log_error(f"Cleaned up dead bash session (PID: {self.pid})")
            self._log_session("SYS", {"event": "closed", "was_running": was_running})

    def info(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "pid": self.pid,
            "running": self.running,
            "death_reason": self.death_reason if not self.running else "",
            "last_command": self.last_command,
            "created_at": self.created_at.isoformat(),
            "session_log_path": self.session_log_path,
        }


def format_seconds(seconds: float) -> str:
    if float(seconds).is_integer():
        return f"{int(seconds)}s"
    return f"{seconds:g}s"


class SessionManager:
    """Owns at most one BashSession and serializes every command against it."""

    def __init__(
        self,
        timeout: float = DEFAULT_COMMAND_TIMEOUT,
        env: Optional[Dict[str, str]] = None,
        socket_dir: str = DEFAULT_SOCKET_DIR,
        cache_dirs: Optional[Dict[str, str]] = None,
        project_tag: str = "",
        **session_kwargs: Any,
    ):
        self.default_timeout = timeout if timeout else DEFAULT_COMMAND_TIMEOUT
        self.socket_dir = socket_dir
        self.env = env if env is not None else build_shell_env(dict(os.environ), socket_dir)
        self.cache_dirs = cache_dirs or {}
        self.project_tag = project_tag
        self.session_kwargs = session_kwargs

        self.session: Optional[BashSession] = None
        self.next_session_id = 1
        self.is_shutdown = False
        # lock guards the session pointer, exec_lock orders commands
        self.lock = threading.Lock()
        self.exec_lock = threading.Lock()

    def _create_session(self) -> Dict[str, Any]:
        ensure_socket_dir(self.socket_dir)
        sid = self.next_session_id
        self.next_session_id += 1
        session = BashSession(
            sid,
            env=self.env,
            cache_dirs=self.cache_dirs,
            project_tag=self.project_tag,
            **self.session_kwargs,
        )
        if not session.start():
            log_error(f"failed to create bash session: {session.death_reason}")
            return {"success": False, "error": f"failed to create bash session: {session.death_reason}"}
        self.session = session
        return {"success": True, "session_id": sid, "pid": session.pid}

    def _replace_dead_session(self) -> Dict[str, Any]:
        if self.session is not None and self.session.running:
            return {"success": True, "session_id": self.session.id}
        if self.session is not None:
            log_error(f"Cleaning up dead session before creating new one (PID: {self.session.pid})")
            self.session.close()
            self.session = None
        return self._create_session()

    def execute_command(self, command: str, timeout: Optional[float] = None) -> Dict[str, Any]:
        with self.exec_lock:
            with self.lock:
                if self.is_shutdown:
                    return {"success": False, "error": "session manager is shut down"}
                ready = self._replace_dead_session()
                if not ready.get("success"):
                    return ready
                session = self.session
            return session.execute(command, timeout or self.default_timeout)

    def restart_session(self) -> Dict[str, Any]:
        with self.exec_lock:
            with self.lock:
                if self.is_shutdown:
                    return {"success": False, "error": "session manager is shut down"}
                if self.session is not None:
                    self.session.close()
                    self.session = None
                return self._create_session()

    def current_session_info(self) -> Optional[Dict[str, Any]]:
        with self.lock:
            return self.session.info() if self.session is not None else None

    def shutdown(self) -> None:
        # does not wait for exec_lock so an in-flight command is cut short
        with self.lock:
            self.is_shutdown = True
            session = self.session
            self.session = None
        if session is not None:
            session.close()
