# Copyright (c) 2025 Henru Wang
# All rights reserved.

"""Process-invocation collaborator.

Runs the external build/test tool for one project or solution and returns
its exit status plus combined stdout/stderr. Each child is started in its
own session so that cancellation can kill the whole process group,
including any descendants the tool spawns (test hosts, build servers).
"""

import logging
import os
import signal
import subprocess
import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Dict, List, Optional, Sequence

logger = logging.getLogger(__name__)

LineCallback = Callable[[str], None]


class InvocationError(Exception):
    """Raised when the external tool cannot be started at all."""

    pass


@dataclass
class InvocationResult:
    """Exit status and combined output of one invocation."""

    exit_code: int
    output: str
    duration: float
    cancelled: bool = False

    @property
    def success(self) -> bool:
        return self.exit_code == 0 and not self.cancelled


class Invoker(ABC):
    """Runs the external tool. Implementations must be safe to call from several threads."""

    @abstractmethod
    def invoke(
        self,
        target: str,
        verb: str,
        flags: Sequence[str],
        on_line: Optional[LineCallback] = None,
        cancel: Optional[threading.Event] = None,
    ) -> InvocationResult:
        """Run ``<tool> <verb> <target> <flags...>``.

        Args:
            target: Repo-relative project or solution path.
            verb: Command verb (``test``, ``build``...).
            flags: Additional arguments.
            on_line: Called with each output line as it arrives.
            cancel: When set, the invocation is terminated as soon as possible.

        Raises:
            InvocationError: If the tool could not be started.
        """
        pass


def _kill_group(proc: "subprocess.Popen[str]") -> None:
    """Kill the child's whole process group; fall back to the child alone."""
    if hasattr(os, "killpg"):
        try:
            os.killpg(os.getpgid(proc.pid), signal.SIGKILL)
            return
        except ProcessLookupError:
            return
        except OSError as e:
            logger.debug(f"killpg failed for pid {proc.pid}: {e}")
    try:
        proc.kill()
    except OSError:
        pass


class DotnetInvoker(Invoker):
    """Invoker backed by a subprocess of the external tool (``dotnet`` by default)."""

    def __init__(
        self,
        root: Path,
        executable: str = "dotnet",
        env: Optional[Dict[str, str]] = None,
        poll_interval: float = 0.1,
    ):
        self.root = Path(root)
        self.executable = executable
        self.env = env
        self.poll_interval = poll_interval

    def _watch_cancel(
        self,
        proc: "subprocess.Popen[str]",
        cancel: threading.Event,
        done: threading.Event,
        killed: threading.Event,
    ) -> None:
        while not done.is_set():
            if cancel.wait(self.poll_interval):
                if proc.poll() is None:
                    logger.debug(f"Cancelling pid {proc.pid}")
                    killed.set()
                    _kill_group(proc)
                return

    def invoke(
        self,
        target: str,
        verb: str,
        flags: Sequence[str],
        on_line: Optional[LineCallback] = None,
        cancel: Optional[threading.Event] = None,
    ) -> InvocationResult:
        cmd: List[str] = [self.executable, verb, target, *flags]
        logger.debug(f"Running: {' '.join(cmd)}")

        if cancel is not None and cancel.is_set():
            return InvocationResult(exit_code=-1, output="", duration=0.0, cancelled=True)

        start = time.monotonic()
        try:
            proc = subprocess.Popen(
                cmd,
                cwd=str(self.root),
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                stdin=subprocess.DEVNULL,
                text=True,
                errors="replace",
                bufsize=1,
                start_new_session=True,
                env=self.env,
            )
        except OSError as e:
            raise InvocationError(f"Cannot start {self.executable}: {e}") from e

        done = threading.Event()
        killed = threading.Event()
        if cancel is not None:
            threading.Thread(
                target=self._watch_cancel,
                args=(proc, cancel, done, killed),
                name=f"cancel-watch-{proc.pid}",
                daemon=True,
            ).start()

        lines: List[str] = []
        try:
            assert proc.stdout is not None
            for line in proc.stdout:
                lines.append(line)
                if on_line is not None:
                    on_line(line.rstrip("\r\n"))
            exit_code = proc.wait()
        finally:
            done.set()
            if proc.poll() is None:
                _kill_group(proc)
                proc.wait()
            if proc.stdout is not None:
                proc.stdout.close()

        return InvocationResult(
            exit_code=exit_code,
            output="".join(lines),
            duration=time.monotonic() - start,
            cancelled=killed.is_set(),
        )
