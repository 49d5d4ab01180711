"""
Worker execution units: one OS process per job.

The child runs a single task and reports exactly one message over a one-way
pipe, ``{"status": "success", "data": ...}`` or
``{"status": "error", "message": ...}``. Nothing else is shared with the
parent, so a crashing or runaway computation only takes down its own process.
"""

import asyncio
import multiprocessing
from concurrent.futures import Executor
from dataclasses import dataclass
from multiprocessing.connection import Connection
from typing import Any

from api.v1.core.registries import Task


@dataclass(frozen=True)
class WorkerOutcome:
    """Terminal outcome of one worker execution unit."""

    ok: bool
    data: dict[str, Any] | None = None
    message: str | None = None
    # Abnormal termination or timeout, as opposed to a reported task error
    crashed: bool = False


def _unit_main(conn: Connection, task: Task, payload: dict[str, Any]) -> None:
    try:
        data = task(payload)
    except Exception as e:
        conn.send({"status": "error", "message": str(e) or e.__class__.__name__})
    else:
        conn.send({"status": "success", "data": data})
    finally:
        conn.close()


class WorkerUnit:
    """Runs one task in a fresh process and waits for its single report."""

    def __init__(
        self,
        task: Task,
        payload: dict[str, Any],
        *,
        start_method: str = "spawn",
        timeout_s: float | None = None,
    ):
        self.task = task
        self.payload = payload
        self.start_method = start_method
        self.timeout_s = timeout_s
        self.exitcode: int | None = None

    async def run(self, executor: Executor | None = None) -> WorkerOutcome:
        """Run the unit without blocking the event loop."""
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(executor, self.run_blocking)

    def run_blocking(self) -> WorkerOutcome:
        ctx = multiprocessing.get_context(self.start_method)
        receiver, sender = ctx.Pipe(duplex=False)
        process = ctx.Process(
            target=_unit_main,
            args=(sender, self.task, self.payload),
            daemon=True,
        )
        process.start()
        # Only the child holds the write end, so a dead child reads as EOF
        sender.close()

        report: dict[str, Any] | None = None
        try:
            if not receiver.poll(self.timeout_s):
                process.kill()
                process.join()
                self.exitcode = process.exitcode
                return WorkerOutcome(
                    ok=False,
                    message=f"Worker timed out after {self.timeout_s}s",
                    crashed=True,
                )
            try:
                report = receiver.recv()
            except EOFError:
                report = None
        finally:
            receiver.close()

        process.join()
        self.exitcode = process.exitcode

        if report is None:
            if process.exitcode != 0:
                message = f"Worker stopped with exit code {process.exitcode}"
            else:
                message = "Worker exited without reporting a result"
            return WorkerOutcome(ok=False, message=message, crashed=True)

        if report.get("status") == "success":
            return WorkerOutcome(ok=True, data=report.get("data") or {})

        return WorkerOutcome(ok=False, message=report.get("message") or "Task failed")
