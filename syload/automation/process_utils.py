#!/usr/bin/env python3
"""Registry for the subprocesses a load test spawns (servers and the agent)."""

from __future__ import annotations

import asyncio
import re
import signal
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional, Pattern


class ProcessLaunchError(RuntimeError):
    pass


class StartupTimeout(ProcessLaunchError):
    pass


@dataclass
class ManagedProcess:
    name: str
    argv: List[str]
    proc: asyncio.subprocess.Process
    log_path: Optional[Path] = None
    print_output: bool = False
    filters: List[Pattern[str]] = field(default_factory=list)
    drain_task: Optional[asyncio.Task] = field(default=None, repr=False)

    @property
    def pid(self) -> int:
        return self.proc.pid

    @property
    def returncode(self) -> Optional[int]:
        return self.proc.returncode

    async def wait_ready(self, pattern: str, timeout: float) -> None:
        """Block until a line of output matches ``pattern``.

        Output read while waiting is written to the log file and, when
        requested, passed through to stderr. Once ready, the remaining output
        keeps being drained in the background so the child never blocks on a
        full pipe.
        """
        ready = re.compile(pattern)

        async def _scan() -> None:
            while True:
                line = await self._readline()
                if line is None:
                    raise ProcessLaunchError(f"{self.name} exited early with code {self.proc.returncode}")
                if ready.search(line):
                    return

        try:
            await asyncio.wait_for(_scan(), timeout)
        except asyncio.TimeoutError:
            raise StartupTimeout(f"{self.name} failed to start within {timeout:g}s") from None
        self.drain_task = asyncio.ensure_future(self._drain())

    async def _readline(self) -> Optional[str]:
        if self.proc.stdout is None:
            return None
        raw = await self.proc.stdout.readline()
        if not raw:
            await self.proc.wait()
            return None
        line = raw.decode("utf-8", errors="replace").rstrip("\n")
        self._emit(line)
        return line

    async def _drain(self) -> None:
        while await self._readline() is not None:
            pass

    async def close_output(self, timeout: float = 1.0) -> None:
        """Let the background drain reach EOF, then stop it."""
        task = self.drain_task
        if task is None:
            return
        await asyncio.wait({task}, timeout=timeout)
        if not task.done():
            task.cancel()
        await asyncio.gather(task, return_exceptions=True)

    def _emit(self, line: str) -> None:
        if self.log_path:
            try:
                with self.log_path.open("a", encoding="utf-8") as f:
                    f.write(line + "\n")
            except OSError:
                pass
        if not self.print_output:
            return
        if self.filters and not any(flt.search(line) for flt in self.filters):
            return
        print(f"[{self.name}] {line}", file=sys.stderr)


class ProcessRegistry:
    """Owns every spawned subprocess so one teardown path can stop them all."""

    def __init__(self, terminate_timeout: float = 5.0):
        self._procs: Dict[str, ManagedProcess] = {}
        self._terminate_timeout = terminate_timeout

    def __len__(self) -> int:
        return len(self._procs)

    def __contains__(self, name: str) -> bool:
        return name in self._procs

    async def spawn(
        self,
        name: str,
        argv: List[str],
        log_path: Optional[Path] = None,
        cwd: Optional[Path] = None,
        env: Optional[Dict[str, str]] = None,
        stdin: Optional[int] = None,
        merge_stderr: bool = True,
        print_output: bool = False,
        filters: Optional[List[str]] = None,
    ) -> ManagedProcess:
        if name in self._procs:
            raise ProcessLaunchError(f"a process named {name} is already registered")
        if log_path:
            log_path.parent.mkdir(parents=True, exist_ok=True)
            # Write a small header so users can see what was launched.
            log_path.write_text(f"[launcher] starting {name}: {' '.join(argv)}\n", encoding="utf-8")
        try:
            proc = await asyncio.create_subprocess_exec(
                *argv,
                cwd=cwd,
                env=env,
                stdin=stdin,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT if merge_stderr else asyncio.subprocess.PIPE,
            )
        except OSError as exc:
            raise ProcessLaunchError(f"failed to start {name}: {exc}") from exc
        managed = ManagedProcess(
            name=name,
            argv=list(argv),
            proc=proc,
            log_path=log_path,
            print_output=print_output,
            filters=[re.compile(pat) for pat in (filters or [])],
        )
        self._procs[name] = managed
        return managed

    async def shutdown_all(self) -> None:
        if self._procs:
            print(f"[runner] stopping {', '.join(self._procs)}", file=sys.stderr)
        procs = list(self._procs.values())
        self._procs.clear()
        await asyncio.gather(*(_terminate_process(mp, self._terminate_timeout) for mp in procs))
        await asyncio.gather(*(mp.close_output() for mp in procs))


async def _terminate_process(managed: ManagedProcess, timeout: float) -> None:
    proc = managed.proc
    if proc.returncode is not None:
        return
    try:
        proc.send_signal(signal.SIGINT)
    except ProcessLookupError:
        return
    try:
        await asyncio.wait_for(proc.wait(), timeout)
    except asyncio.TimeoutError:
        try:
            proc.kill()
        except ProcessLookupError:
            return
        await proc.wait()
