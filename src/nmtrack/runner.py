# Copyright (c) Syntropy Systems
"""Process runner for estimation commands."""
from __future__ import annotations

import contextlib
import ctypes
import os
import signal
import subprocess
import sys
from typing import IO, TYPE_CHECKING

if TYPE_CHECKING:
    from pathlib import Path


def setup_pdeathsig() -> None:
    """Set PDEATHSIG so child dies when parent dies.

    This prevents orphan estimation processes when the job body crashes.
    Only works on Linux.
    """
    if sys.platform != "linux":
        return
    try:
        libc = ctypes.CDLL("libc.so.6", use_errno=True)
        pr_set_pdeathsig = 1
        libc.prctl(pr_set_pdeathsig, signal.SIGKILL)
    except (AttributeError, OSError):
        # Can't set PDEATHSIG, continue without it
        return


class JobRunner:
    """Runs a command with proper process management.

    Features:
    - Uses start_new_session=True for reliable process group
    - Optionally sets PDEATHSIG on Linux so the child dies with its parent
    - Captures stdout to output_path and stderr to error_path (or merges
      stderr into stdout when error_path is None)
    """

    command_argv: list[str]
    workdir: Path
    output_path: Path
    error_path: Path | None
    env: dict[str, str]
    die_with_parent: bool
    _process: subprocess.Popen[bytes] | None
    _exit_code: int | None
    _files: list[IO[str]]

    def __init__(  # noqa: PLR0913
        self,
        command_argv: list[str],
        workdir: Path,
        output_path: Path,
        error_path: Path | None = None,
        env: dict[str, str] | None = None,
        die_with_parent: bool = True,  # noqa: FBT001, FBT002
    ) -> None:
        """Initialize a job runner.

        Args:
            command_argv: Command as list of argv tokens (no shell)
            workdir: Working directory to run the command in
            output_path: File receiving stdout
            error_path: File receiving stderr, None to merge into stdout
            env: Additional environment variables
            die_with_parent: Kill the child if this process dies (Linux only).
                Detached submissions turn this off so the run outlives the caller.

        """
        self.command_argv = command_argv
        self.workdir = workdir
        self.output_path = output_path
        self.error_path = error_path
        self.die_with_parent = die_with_parent

        # Merge environment
        self.env = os.environ.copy()
        if env:
            self.env.update(env)

        self._process = None
        self._exit_code = None
        self._files = []

    def start(self) -> None:
        """Start the process."""
        self.output_path.parent.mkdir(parents=True, exist_ok=True)

        stdout_file = self.output_path.open("w")
        self._files.append(stdout_file)
        stderr_target: IO[str] | int = subprocess.STDOUT
        if self.error_path is not None:
            stderr_file = self.error_path.open("w")
            self._files.append(stderr_file)
            stderr_target = stderr_file

        use_pdeathsig = self.die_with_parent and sys.platform == "linux"
        try:
            self._process = subprocess.Popen(  # noqa: S603
                self.command_argv,
                stdout=stdout_file,
                stderr=stderr_target,
                stdin=subprocess.DEVNULL,
                env=self.env,
                cwd=str(self.workdir),
                start_new_session=True,  # Creates new process group
                preexec_fn=setup_pdeathsig if use_pdeathsig else None,  # noqa: PLW1509
            )
        except OSError:
            self._cleanup()
            raise

    def wait(self) -> int:
        """Wait for the process to finish and return exit code."""
        if self._process is None:
            return self._exit_code or 0

        code = self._process.wait()
        self._exit_code = code
        self._cleanup()
        return code

    def detach(self) -> None:
        """Stop tracking the process and release this side's file handles.

        The child keeps running with its own copies of the descriptors.
        """
        self._cleanup()
        self._process = None

    def _cleanup(self) -> None:
        """Cleanup resources."""
        for handle in self._files:
            with contextlib.suppress(OSError):
                handle.close()
        self._files = []

    @property
    def pid(self) -> int | None:
        """Get the process ID."""
        if self._process is None:
            return None
        return self._process.pid


def pid_alive(pid: int) -> bool:
    """Return whether a process with this pid exists on this host."""
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        # Exists but owned by someone else
        return True
    except OSError:
        return False
    return True
