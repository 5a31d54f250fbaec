from __future__ import annotations

import os
import queue
import signal
import subprocess
import threading
import time
from pathlib import Path
from typing import Any, Callable

from ralph.constants import DONE_FILE
from ralph.events import parse_agent_line
from ralph.models import AgentDispatchFailure, AgentResult, RalphConfig, ToolUseEvent
from ralph.utils import _append_log, _compact_log_text, _redact_sensitive_text

EventCallback = Callable[[ToolUseEvent], None]

_STREAM_END = object()


def _build_agent_command(config: RalphConfig, *, model: str, prompt: str) -> list[str]:
    command = list(config.agent_command)
    if model:
        command += ["--model", model]
    command += list(config.agent_extra_args)
    command += ["--", prompt]
    return command


def _pump_stream(stream: Any, sink: "queue.Queue[Any]") -> None:
    if stream is None:
        sink.put(_STREAM_END)
        return
    try:
        for line in iter(stream.readline, ""):
            sink.put(line)
    finally:
        try:
            stream.close()
        except Exception:
            pass
        sink.put(_STREAM_END)


class OpencodeRunner:
    """Runs one agent step as a subprocess and forwards its JSON event stream.

    Events are handed to ``on_event`` from the calling thread only; reader
    threads just move raw lines into queues.
    """

    max_capture_chars = 2400

    def __init__(self, config: RalphConfig) -> None:
        self.config = config

    def run(
        self,
        repo_root: Path,
        *,
        plan_file: str,
        model: str,
        prompt: str,
        cancel_token: threading.Event,
        on_event: EventCallback,
    ) -> AgentResult:
        command = _build_agent_command(self.config, model=model, prompt=prompt)
        env = os.environ.copy()
        env["RALPH_PLAN_FILE"] = plan_file
        env["RALPH_MODEL"] = model
        env["RALPH_DONE_FILE"] = str(repo_root / DONE_FILE)
        _append_log(
            repo_root,
            f"agent runner start model={model} command={_redact_sensitive_text(' '.join(command[:-1]))}",
        )
        try:
            # Own session so a terminal Ctrl-C reaches the agent only through _interrupt.
            process = subprocess.Popen(
                command,
                cwd=repo_root,
                shell=False,
                text=True,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                bufsize=1,
                env=env,
                start_new_session=os.name == "posix",
            )
        except OSError as exc:
            _append_log(repo_root, f"agent runner dispatch error: {exc}")
            raise AgentDispatchFailure(f"could not start agent '{command[0]}': {exc}") from exc

        stdout_lines: "queue.Queue[Any]" = queue.Queue()
        stderr_lines: "queue.Queue[Any]" = queue.Queue()
        stdout_thread = threading.Thread(target=_pump_stream, args=(process.stdout, stdout_lines), daemon=True)
        stderr_thread = threading.Thread(target=_pump_stream, args=(process.stderr, stderr_lines), daemon=True)
        stdout_thread.start()
        stderr_thread.start()

        timeout = self.config.agent_timeout_seconds
        deadline = time.monotonic() + timeout if timeout > 0 else None
        interrupted = False
        timed_out = False
        captured_stderr: list[str] = []
        returncode: int | None = None
        try:
            while True:
                self._drain_stdout(stdout_lines, on_event)
                self._drain_stderr(stderr_lines, captured_stderr)
                returncode = process.poll()
                if returncode is not None:
                    break
                if cancel_token.is_set() and not interrupted:
                    # Let the agent wind down its current step instead of killing it.
                    interrupted = True
                    _append_log(repo_root, "agent runner forwarding interrupt to agent")
                    self._interrupt(process)
                if deadline is not None and time.monotonic() >= deadline:
                    timed_out = True
                    _append_log(repo_root, f"agent runner timeout timeout_seconds={timeout}")
                    process.terminate()
                    try:
                        returncode = process.wait(timeout=2)
                    except subprocess.TimeoutExpired:
                        process.kill()
                        returncode = process.wait()
                    break
                try:
                    process.wait(timeout=self.config.poll_interval_seconds)
                except subprocess.TimeoutExpired:
                    pass
        finally:
            stdout_thread.join(timeout=2)
            stderr_thread.join(timeout=2)
        self._drain_stdout(stdout_lines, on_event)
        self._drain_stderr(stderr_lines, captured_stderr)

        stderr_text = "".join(captured_stderr).strip()
        if stderr_text:
            _append_log(
                repo_root,
                f"agent runner stderr: {_compact_log_text(_redact_sensitive_text(stderr_text))}",
            )
        _append_log(repo_root, f"agent runner exit returncode={returncode}")
        return AgentResult(exit_code=returncode, interrupted=interrupted, timed_out=timed_out)

    def _interrupt(self, process: subprocess.Popen[str]) -> None:
        try:
            if os.name == "posix":
                process.send_signal(signal.SIGINT)
            else:
                process.terminate()
        except ProcessLookupError:
            pass

    def _drain_stdout(self, lines: "queue.Queue[Any]", on_event: EventCallback) -> None:
        while True:
            try:
                line = lines.get_nowait()
            except queue.Empty:
                return
            if line is _STREAM_END:
                continue
            event = parse_agent_line(line)
            if event is not None:
                on_event(event)

    def _drain_stderr(self, lines: "queue.Queue[Any]", captured: list[str]) -> None:
        captured_len = sum(len(chunk) for chunk in captured)
        while True:
            try:
                line = lines.get_nowait()
            except queue.Empty:
                return
            if line is _STREAM_END or captured_len >= self.max_capture_chars:
                continue
            snippet = line[: self.max_capture_chars - captured_len]
            captured.append(snippet)
            captured_len += len(snippet)
