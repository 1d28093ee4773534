"""External tool integration (chdman)."""

from __future__ import annotations

import logging
import os
import shutil
import subprocess
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, List, Optional

from ..exceptions import ExternalToolError

logger = logging.getLogger(__name__)

LogCallback = Optional[Callable[[str], None]]

CHDMAN_ENV_VAR = "ROMCURATOR_CHDMAN"
_POLL_INTERVAL = 0.05
_GRACE_SECONDS = 2.0


@dataclass(frozen=True)
class ToolRunResult:
    exit_code: int
    stdout: str
    stderr: str
    cancelled: bool
    timed_out: bool

    @property
    def success(self) -> bool:
        return self.exit_code == 0 and not self.cancelled and not self.timed_out

    def outcome(self) -> str:
        if self.cancelled:
            return "cancelled"
        if self.timed_out:
            return "timed out"
        return "ok" if self.success else "failed"


def find_chdman(configured_path: Optional[str] = None) -> Optional[str]:
    """Locate chdman: configured path first, then ``ROMCURATOR_CHDMAN``, then PATH."""
    for candidate in (configured_path, os.environ.get(CHDMAN_ENV_VAR)):
        if not candidate:
            continue
        resolved = shutil.which(candidate)
        if resolved:
            return resolved
        if os.path.isfile(candidate) and os.access(candidate, os.X_OK):
            return candidate
        logger.warning("chdman candidate %s is not executable", candidate)
    return shutil.which("chdman")


def _stop(process: subprocess.Popen) -> None:
    """Terminate ``process`` (and its children on Windows), escalating to kill."""
    if process.poll() is not None:
        return
    if os.name == "nt":
        try:
            subprocess.run(
                ["taskkill", "/T", "/F", "/PID", str(process.pid)],
                stdout=subprocess.DEVNULL,
                stderr=subprocess.DEVNULL,
                check=False,
            )
            return
        except OSError:
            logger.exception("taskkill failed for pid %s", process.pid)
    process.terminate()
    try:
        process.wait(timeout=_GRACE_SECONDS)
    except subprocess.TimeoutExpired:
        logger.warning("pid %s ignored terminate, killing", process.pid)
        process.kill()


def _pump(stream, sink: List[str], emit: Callable[[str], None], label: str) -> threading.Thread:
    def _drain() -> None:
        with stream:
            for line in stream:
                sink.append(line)
                emit(f"{label}{line.rstrip()}".rstrip())

    thread = threading.Thread(target=_drain, daemon=True)
    thread.start()
    return thread


def run_external_process(
    *,
    exe_path: str,
    args: List[str],
    tool_label: str,
    log_cb: LogCallback = None,
    cancel_token: Optional[Any] = None,
    timeout_sec: Optional[float] = None,
) -> ToolRunResult:
    """Run a tool, streaming its output lines to ``log_cb`` (or the debug log).

    The process is stopped when the cancel token fires or ``timeout_sec``
    elapses; the result then carries ``cancelled`` / ``timed_out``.
    """
    emit = log_cb if log_cb is not None else logger.debug
    flags = getattr(subprocess, "CREATE_NEW_PROCESS_GROUP", 0) if os.name == "nt" else 0

    logger.debug("%s: %s %s", tool_label, exe_path, " ".join(args))
    process = subprocess.Popen(
        [exe_path, *args],
        stdout=subprocess.PIPE,
        stderr=subprocess.PIPE,
        text=True,
        creationflags=flags,
    )

    out: List[str] = []
    err: List[str] = []
    readers = [
        _pump(process.stdout, out, emit, f"{tool_label}: "),
        _pump(process.stderr, err, emit, f"{tool_label} [err]: "),
    ]

    deadline = time.monotonic() + timeout_sec if timeout_sec and timeout_sec > 0 else None
    cancelled = timed_out = False
    while process.poll() is None:
        if cancel_token is not None and cancel_token.is_cancelled():
            cancelled = True
        elif deadline is not None and time.monotonic() >= deadline:
            timed_out = True
        if cancelled or timed_out:
            _stop(process)
            break
        time.sleep(_POLL_INTERVAL)

    try:
        process.wait(timeout=_GRACE_SECONDS)
    except subprocess.TimeoutExpired:
        _stop(process)
    for reader in readers:
        reader.join(timeout=_GRACE_SECONDS)

    exit_code = process.returncode if process.returncode is not None else -1
    return ToolRunResult(exit_code, "".join(out), "".join(err), cancelled, timed_out)


def run_chdman(
    args: List[str],
    *,
    chdman_path: Optional[str] = None,
    timeout_sec: Optional[float] = None,
    cancel_token: Optional[Any] = None,
) -> ToolRunResult:
    """Run chdman and raise ExternalToolError unless it exits cleanly."""
    exe = find_chdman(chdman_path)
    if not exe:
        raise ExternalToolError("chdman not found (set conversion.chdman_path or put it on PATH)", tool="chdman")
    result = run_external_process(
        exe_path=exe,
        args=args,
        tool_label="chdman",
        cancel_token=cancel_token,
        timeout_sec=timeout_sec,
    )
    if not result.success:
        tail = (result.stderr or result.stdout).strip().splitlines()[-3:]
        raise ExternalToolError(
            f"chdman {args[0] if args else ''} {result.outcome()}",
            tool="chdman",
            exit_code=result.exit_code,
            details={"output": tail},
        )
    return result
