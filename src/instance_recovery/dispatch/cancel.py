from __future__ import annotations

import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from enum import Enum
from typing import Iterable, List, Optional, Protocol, Sequence

from rich.console import Console
from rich.markup import escape

from ..utils.commands import CommandFailedError, render_argv, run_command

console = Console()


class DispatchState(str, Enum):
    PENDING = "PENDING"
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"


class EntityCommandRunner(Protocol):
    def cancel(self, key: int) -> None:
        """Cancel one process instance; raise on failure."""
        ...


@dataclass
class CommandEntityRunner:
    """Cancels a process instance through the engine CLI (``{key}`` placeholder)."""

    command: Sequence[str]
    timeout_s: Optional[float] = None

    def cancel(self, key: int) -> None:
        argv = render_argv(self.command, key=key)
        proc = run_command(argv, timeout_s=self.timeout_s)
        for line in (proc.stderr or "").splitlines():
            if line.strip():
                console.print(f"[red]{key}:[/red] {escape(line)}")
        if proc.returncode != 0:
            raise CommandFailedError(argv, proc.returncode, proc.stderr or "")


@dataclass
class EntityOutcome:
    key: int
    state: DispatchState = DispatchState.PENDING
    attempts: int = 0
    last_error: Optional[str] = None


@dataclass
class DispatchResult:
    outcomes: List[EntityOutcome] = field(default_factory=list)

    @property
    def succeeded(self) -> List[int]:
        return [o.key for o in self.outcomes if o.state is DispatchState.SUCCESS]

    @property
    def failed(self) -> List[int]:
        return [o.key for o in self.outcomes if o.state is DispatchState.FAILED]


def cancel_with_retry(
    key: int,
    runner: EntityCommandRunner,
    max_attempts: int = 3,
    retry_backoff_s: float = 0.0,
) -> EntityOutcome:
    outcome = EntityOutcome(key=key)
    while outcome.state is DispatchState.PENDING:
        outcome.attempts += 1
        try:
            runner.cancel(key)
        except Exception as e:
            outcome.last_error = str(e)
            if outcome.attempts >= max_attempts:
                outcome.state = DispatchState.FAILED
                console.print(f"[red]{key}: FAILED after {max_attempts} attempts. Moving on...[/red]")
            else:
                console.print(f"[yellow]{key}: attempt {outcome.attempts} failed, retrying...[/yellow]")
                if retry_backoff_s > 0:
                    time.sleep(retry_backoff_s * (2 ** (outcome.attempts - 1)))
            continue
        outcome.state = DispatchState.SUCCESS
        console.print(f"{key}: CANCELLED")
    return outcome


def dispatch_cancellations(
    keys: Iterable[int],
    runner: EntityCommandRunner,
    workers: int = 10,
    max_attempts: int = 3,
    retry_backoff_s: float = 0.0,
) -> DispatchResult:
    """
    Cancel each key on a pool of ``workers`` threads. Each worker runs one key's
    whole retry loop before taking the next; failed keys never block others.
    """
    keys = list(keys)
    result = DispatchResult()
    with ThreadPoolExecutor(max_workers=max(1, workers)) as pool:
        futures = [pool.submit(cancel_with_retry, k, runner, max_attempts, retry_backoff_s) for k in keys]
        for fut in as_completed(futures):
            result.outcomes.append(fut.result())
    result.outcomes.sort(key=lambda o: o.key)
    console.print(
        f"[green]Cancellation complete[/green]: total={len(keys)} "
        f"cancelled={len(result.succeeded)} failed={len(result.failed)}"
    )
    return result
