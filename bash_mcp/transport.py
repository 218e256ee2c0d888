import io
import sys
import json
import time
import threading
from typing import Any, Callable, Dict, Optional, TextIO
from bash_mcp.config import MAX_LOG_FRAME_CHARS, ERR_INTERNAL
from bash_mcp.utils import log_error, truncate_for_log

FrameHandler = Callable[[Any], Optional[Dict[str, Any]]]


class StdioTransport:
    """Reads newline-delimited JSON frames and answers each on its own thread.

    The reader loop never waits for a handler, so a notification or a second
    request can be picked up while a long command is still running. Writes
    are serialized so concurrently finishing handlers never interleave frames.
    """

    def __init__(self, reader: Optional[TextIO] = None, writer: Optional[TextIO] = None):
        # Force UTF-8 regardless of the platform default encoding
        self.reader = reader if reader is not None else io.TextIOWrapper(sys.stdin.buffer, encoding="utf-8", errors="replace")
        self.writer = writer if writer is not None else io.TextIOWrapper(sys.stdout.buffer, encoding="utf-8", line_buffering=True)
        self.write_lock = threading.Lock()
        self.tasks_lock = threading.Lock()
        self.tasks: Dict[int, threading.Thread] = {}
        self.task_counter = 0

    def serve(self, handler: FrameHandler) -> None:
        for line in self.reader:
            line = line.strip()
            if not line:
                continue
            log_error(f"Received message: {truncate_for_log(line, MAX_LOG_FRAME_CHARS)}")
            try:
                frame = json.loads(line)
            except json.JSONDecodeError as exc:
                # no usable id, so there is nobody to answer
                log_error(f"invalid json: {exc}")
                continue
            self.dispatch(handler, frame)
        log_error("Received EOF from stdin, exiting")

    def dispatch(self, handler: FrameHandler, frame: Any) -> threading.Thread:
        with self.tasks_lock:
            self.task_counter += 1
            task_id = self.task_counter
            thread = threading.Thread(
                target=self._handle_and_respond,
                args=(task_id, handler, frame),
                name=f"frame-{task_id}",
                daemon=True,
            )
            self.tasks[task_id] = thread
        thread.start()
        return thread

    def _handle_and_respond(self, task_id: int, handler: FrameHandler, frame: Any) -> None:
        try:
            response = handler(frame)
        except Exception as exc:
            log_error(f"unexpected error: {exc}")
            response = None
            if isinstance(frame, dict) and "id" in frame:
                # keep the client from waiting on a reply that will never come
                response = {
                    "jsonrpc": "2.0",
                    "id": frame.get("id"),
                    "error": {"code": ERR_INTERNAL, "message": f"Internal error: {exc}"},
                }
        finally:
            with self.tasks_lock:
                self.tasks.pop(task_id, None)

        if response is not None:
            self.write_response(response)

    def write_response(self, response: Dict[str, Any]) -> None:
        with self.write_lock:
            try:
                self.writer.write(json.dumps(response, ensure_ascii=False) + "\n")
                self.writer.flush()
            except Exception as exc:
                log_error(f"response write error: {exc}")
                # Fallback: escape all non-ASCII to guarantee safe output
                try:
                    self.writer.write(json.dumps(response, ensure_ascii=True) + "\n")
                    self.writer.flush()
                except Exception as exc2:
                    log_error(f"response write fallback error: {exc2}")

    def pending_tasks(self) -> int:
        with self.tasks_lock:
            return len(self.tasks)

    def wait_for_tasks(self, timeout: Optional[float] = None) -> bool:
        # one deadline for all tasks, not one timeout each
        deadline = None if timeout is None else time.monotonic() + timeout
        with self.tasks_lock:
            threads = list(self.tasks.values())
        for thread in threads:
            remaining = None if deadline is None else max(0.0, deadline - time.monotonic())
            thread.join(remaining)
        return self.pending_tasks() == 0
