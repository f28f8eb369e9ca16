from __future__ import annotations

import subprocess
import tempfile
from typing import Iterator, List, Sequence


class CommandFailedError(Exception):
    def __init__(self, argv: Sequence[str], returncode: int, stderr: str = "") -> None:
        self.argv = list(argv)
        self.returncode = returncode
        self.stderr = stderr
        detail = f": {stderr.strip()}" if stderr.strip() else ""
        super().__init__(f"Command {' '.join(self.argv)} exited with code {returncode}{detail}")


def render_argv(template: Sequence[str], **values: object) -> List[str]:
    """
    Fill ``{name}`` placeholders in each argument of a command template.
    """
    return [str(arg).format(**values) for arg in template]


def stream_stdout(argv: Sequence[str]) -> Iterator[str]:
    """
    Run a command and yield its stdout line by line (without trailing newline).

    stderr is spooled to a temporary file so a chatty process cannot block on a
    full pipe while we are still draining stdout. Raises CommandFailedError after
    the last line if the exit code is non-zero.
    """
    with tempfile.TemporaryFile(mode="w+", encoding="utf-8") as err:
        proc = subprocess.Popen(
            list(argv),
            stdout=subprocess.PIPE,
            stderr=err,
            text=True,
            encoding="utf-8",
        )
        try:
            for line in proc.stdout:
                yield line.rstrip("\r\n")
        finally:
            proc.stdout.close()
            returncode = proc.wait()
        if returncode != 0:
            err.seek(0)
            raise CommandFailedError(argv, returncode, err.read())


def run_command(argv: Sequence[str], timeout_s: float | None = None) -> subprocess.CompletedProcess:
    """Run a command to completion, capturing stdout and stderr as text."""
    return subprocess.run(
        list(argv),
        capture_output=True,
        text=True,
        encoding="utf-8",
        timeout=timeout_s,
    )
