#!/usr/bin/env python3
"""Start the traffic agent (locally or over SSH) and open its control channel.

The agent program is not installed on the client machine. The launcher runs
a small ``python -c`` bootstrap there, streams the program text over stdin,
terminates it with an ``__END__`` line and waits for the agent to print
``START`` before any command is sent.
"""

from __future__ import annotations

import asyncio
import os
import shlex
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, List, Optional

from syload.automation.control_channel import ControlChannel
from syload.automation.process_utils import ProcessLaunchError, ProcessRegistry, StartupTimeout

AGENT_PROGRAM = Path(__file__).resolve().parents[1] / "workloads" / "chat" / "remote_agent.py"
AGENT_NAME = "remote-agent"
PROGRAM_TERMINATOR = "__END__"
READY_MARKER = b"START\n"
AGENT_START_TIMEOUT_S = 10.0

BOOTSTRAP = (
    "import sys\n"
    "src = []\n"
    "for line in iter(sys.stdin.readline, ''):\n"
    f"    if line.rstrip('\\r\\n') == '{PROGRAM_TERMINATOR}':\n"
    "        break\n"
    "    src.append(line)\n"
    "exec(compile(''.join(src), '<syload-agent>', 'exec'), {'__name__': '__main__'})\n"
)


@dataclass
class RemoteSpec:
    host: str
    ssh_options: List[str] = field(default_factory=lambda: ["-o", "BatchMode=yes"])
    local_user: Optional[str] = None

    def wrap_command(self, argv: List[str]) -> List[str]:
        remote_cmd = " ".join(shlex.quote(arg) for arg in argv)
        cmd = ["ssh", *self.ssh_options, self.host, remote_cmd]
        if self.local_user and os.geteuid() == 0:
            return ["sudo", "-u", self.local_user, *cmd]
        return cmd


def build_remote_spec(host: Optional[str], ssh_options: Optional[List[str]] = None) -> Optional[RemoteSpec]:
    if not host:
        return None
    # If the runner is invoked via sudo, avoid trying to SSH as root.
    sudo_user = None
    if os.geteuid() == 0:
        sudo_user = os.environ.get("SUDO_USER")
        if sudo_user == "root":
            sudo_user = None
    options = list(ssh_options) if ssh_options is not None else ["-o", "BatchMode=yes"]
    return RemoteSpec(host=host, ssh_options=options, local_user=sudo_user)


def build_agent_argv(
    server: str,
    python: str = "python3",
    no_ssl: bool = False,
    remote: Optional[RemoteSpec] = None,
    extra_args: Optional[List[str]] = None,
) -> List[str]:
    argv = [python, "-c", BOOTSTRAP, "--server", server]
    if no_ssl:
        argv.append("--no-ssl")
    argv.extend(extra_args or [])
    if remote is None:
        return argv
    return remote.wrap_command(argv)


def load_agent_program(path: Optional[Path] = None) -> str:
    return Path(path or AGENT_PROGRAM).read_text(encoding="utf-8")


class AgentLauncher:
    def __init__(
        self,
        registry: ProcessRegistry,
        program_text: Optional[str] = None,
        start_timeout: float = AGENT_START_TIMEOUT_S,
        on_progress: Optional[Callable[[str], None]] = None,
    ):
        self._registry = registry
        self._program_text = program_text
        self._start_timeout = start_timeout
        self._on_progress = on_progress
        self._tasks: List[asyncio.Task] = []
        self.channel: Optional[ControlChannel] = None

    async def launch(self, argv: List[str]) -> ControlChannel:
        program = self._program_text if self._program_text is not None else load_agent_program()
        managed = await self._registry.spawn(
            AGENT_NAME,
            argv,
            stdin=asyncio.subprocess.PIPE,
            merge_stderr=False,
        )
        proc = managed.proc
        channel_kwargs = {"writer": proc.stdin}
        if self._on_progress is not None:
            channel_kwargs["on_progress"] = self._on_progress
        channel = ControlChannel(**channel_kwargs)
        self._tasks.append(asyncio.ensure_future(channel.relay_stderr(proc.stderr)))
        try:
            await self._handshake(proc, program)
        except BaseException:
            await self.close()
            raise

        self._tasks.append(asyncio.ensure_future(channel.pump(proc.stdout)))
        self._tasks.append(asyncio.ensure_future(_report_exit(proc)))
        self.channel = channel
        return channel

    async def _handshake(self, proc: asyncio.subprocess.Process, program: str) -> None:
        proc.stdin.write(program.rstrip("\n").encode("utf-8") + f"\n{PROGRAM_TERMINATOR}\n".encode("utf-8"))
        try:
            await proc.stdin.drain()
        except ConnectionError as exc:
            raise ProcessLaunchError(f"remote agent closed its input while receiving the program: {exc}") from exc

        try:
            await asyncio.wait_for(proc.stdout.readuntil(READY_MARKER), self._start_timeout)
        except asyncio.TimeoutError:
            raise StartupTimeout("Timed out waiting for remote control process to start") from None
        except asyncio.IncompleteReadError:
            await proc.wait()
            raise ProcessLaunchError(
                f"remote agent exited before signalling readiness (code {proc.returncode})"
            ) from None

    async def close(self) -> None:
        if self.channel is not None:
            self.channel.close()
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks.clear()


async def _report_exit(proc: asyncio.subprocess.Process) -> None:
    exitcode = await proc.wait()
    if exitcode:
        print(f"Remote agent exited with code {exitcode}", file=sys.stderr)
