#!/usr/bin/env python3
"""Run one load test: start servers and the remote agent, then drive the phases."""

from __future__ import annotations

import argparse
import asyncio
import json
import signal
import socket
import sys
from dataclasses import dataclass, field, asdict
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional

import requests
import yaml

from syload.automation.agent_launcher import (
    AGENT_START_TIMEOUT_S,
    AgentLauncher,
    build_agent_argv,
    build_remote_spec,
    load_agent_program,
)
from syload.automation.control_channel import ChannelClosed
from syload.automation.dispatcher import CommandDispatcher, CommandFailed, CommandTimeout
from syload.automation.orchestrator import Phase, RunResult, TestOrchestrator, TestParameters, parse_warmup
from syload.automation.process_utils import ProcessLaunchError, ProcessRegistry
from syload.automation.results import ResultRecorder, StatsOutput
from syload.automation.stats import StatsSample

CONFIG_ROOT = Path(__file__).resolve().parents[1] / "configs" / "loadtest"
DEFAULT_CONFIG = CONFIG_ROOT / "default.yaml"
ARTIFACT_ROOT = Path("artifacts/loadtest")
SERVER_START_TIMEOUT_S = 20.0
METRICS_TIMEOUT_S = 5.0


@dataclass
class ServerSpec:
    name: str
    argv: List[str]
    cwd: Optional[str] = None
    env: Optional[Dict[str, str]] = None
    ready_pattern: str = "Listening"
    ready_timeout: float = SERVER_START_TIMEOUT_S


@dataclass
class LoadTestSettings:
    params: TestParameters
    client_machine: Optional[str] = None
    python: str = "python3"
    ssh_options: List[str] = field(default_factory=lambda: ["-o", "BatchMode=yes"])
    agent_start_timeout: float = AGENT_START_TIMEOUT_S
    agent_program: Optional[str] = None
    server_address: Optional[str] = None
    server_port: int = 8001
    server_plain_port: int = 9001
    no_tls: bool = False
    metrics_url: Optional[str] = None
    servers: List[ServerSpec] = field(default_factory=list)
    output_path: Optional[str] = None
    verbose: int = 0
    server_log: bool = False
    server_grep: List[str] = field(default_factory=list)

    def server_endpoint(self) -> str:
        address = self.server_address
        if not address:
            # A local agent can reach us on localhost; a remote one needs our name.
            if not self.client_machine or self.client_machine == "localhost":
                address = "localhost"
            else:
                address = socket.gethostname()
        port = self.server_plain_port if self.no_tls else self.server_port
        return f"{address}:{port}"


def deep_merge(base: Dict, extra: Dict) -> Dict:
    result = dict(base)
    for key, value in extra.items():
        if isinstance(value, dict) and isinstance(result.get(key), dict):
            result[key] = deep_merge(result[key], value)
        else:
            result[key] = value
    return result


def load_config(override_path: Optional[str] = None) -> Dict:
    cfg = yaml.safe_load(DEFAULT_CONFIG.read_text(encoding="utf-8")) or {}
    if override_path:
        cfg_path = Path(override_path)
        if not cfg_path.exists():
            raise FileNotFoundError(f"loadtest config not found: {cfg_path}")
        cfg = deep_merge(cfg, yaml.safe_load(cfg_path.read_text(encoding="utf-8")) or {})
    return cfg


def _apply_cli(cfg: Dict, args: argparse.Namespace) -> Dict:
    test_keys = {"users": "users", "rooms": "rooms", "rate": "rate", "duration": "duration",
                 "stat_interval": "stat_interval", "warmup": "warmup"}
    overrides: Dict = {"test": {}, "agent": {}, "server": {}}
    for attr, key in test_keys.items():
        value = getattr(args, attr, None)
        if value is not None:
            overrides["test"][key] = value
    if getattr(args, "client_machine", None):
        overrides["agent"]["client_machine"] = args.client_machine
    if getattr(args, "python", None):
        overrides["agent"]["python"] = args.python
    if getattr(args, "server", None):
        overrides["server"]["address"] = args.server
    if getattr(args, "no_tls", False):
        overrides["server"]["no_tls"] = True
    return deep_merge(cfg, overrides)


def _build_server_specs(raw) -> List[ServerSpec]:
    specs: List[ServerSpec] = []
    for idx, entry in enumerate(raw or []):
        if not isinstance(entry, dict) or not entry.get("argv"):
            raise ValueError(f"servers[{idx}] needs an argv list")
        specs.append(
            ServerSpec(
                name=str(entry.get("name") or f"server-{idx}"),
                argv=[str(arg) for arg in entry["argv"]],
                cwd=entry.get("cwd"),
                env=entry.get("env"),
                ready_pattern=str(entry.get("ready_pattern") or "Listening"),
                ready_timeout=float(entry.get("ready_timeout") or SERVER_START_TIMEOUT_S),
            )
        )
    return specs


def build_settings(cfg: Dict, args: Optional[argparse.Namespace] = None) -> LoadTestSettings:
    if args is not None:
        cfg = _apply_cli(cfg, args)
    test = cfg.get("test") or {}
    agent = cfg.get("agent") or {}
    server = cfg.get("server") or {}
    params = TestParameters(
        users=int(test.get("users", 20)),
        rooms=int(test.get("rooms", 20)),
        rate=float(test.get("rate", 5)),
        duration=float(test.get("duration", 120)),
        stat_interval=float(test.get("stat_interval", 5)),
        warmup=parse_warmup(test.get("warmup", "")),
    )
    ssh_options = agent.get("ssh_options")
    return LoadTestSettings(
        params=params,
        client_machine=agent.get("client_machine"),
        python=str(agent.get("python") or "python3"),
        ssh_options=list(ssh_options) if ssh_options is not None else ["-o", "BatchMode=yes"],
        agent_start_timeout=float(agent.get("start_timeout") or AGENT_START_TIMEOUT_S),
        agent_program=agent.get("program"),
        server_address=server.get("address"),
        server_port=int(server.get("port", 8001)),
        server_plain_port=int(server.get("plain_port", 9001)),
        no_tls=bool(server.get("no_tls", False)),
        metrics_url=server.get("metrics_url"),
        servers=_build_server_specs(cfg.get("servers")),
        output_path=getattr(args, "output", None) if args is not None else None,
        verbose=int(getattr(args, "verbose", 0) or 0) if args is not None else 0,
        server_log=bool(getattr(args, "server_log", False)) if args is not None else False,
        server_grep=list(getattr(args, "server_grep", None) or []) if args is not None else [],
    )


def ensure_artifact_dir(artifact_root: Optional[Path] = None) -> Path:
    root = artifact_root or ARTIFACT_ROOT
    root.mkdir(parents=True, exist_ok=True)
    base = f"loadtest_{datetime.utcnow().strftime('%Y%m%d_%H%M%S')}"
    # Several runs can start within the same second; add a suffix when needed.
    for attempt in range(0, 1000):
        suffix = "" if attempt == 0 else f"_{attempt}"
        path = root / f"{base}{suffix}"
        try:
            path.mkdir(parents=True, exist_ok=False)
            return path
        except FileExistsError:
            continue
    raise RuntimeError(f"failed to allocate unique artifact dir under {root} for {base}")


def _log_progress(artifact_dir: Path, message: str) -> None:
    """Append a progress line to a per-run log so users can follow execution."""
    try:
        log_path = artifact_dir / "progress.log"
        with log_path.open("a", encoding="utf-8") as f:
            ts = datetime.now().isoformat(timespec="seconds")
            f.write(f"[{ts}] {message}\n")
    except OSError:
        # Best-effort only: a full disk must not stop the test.
        pass


def snapshot_metrics(url: str, out_path: Path) -> Optional[Path]:
    try:
        resp = requests.get(url, timeout=METRICS_TIMEOUT_S, verify=False)
        resp.raise_for_status()
    except requests.RequestException as exc:
        _log_progress(out_path.parent, f"[runner] metrics snapshot from {url} failed: {exc}")
        return None
    try:
        out_path.write_text(resp.text, encoding="utf-8")
    except OSError as exc:
        _log_progress(out_path.parent, f"[runner] failed to write {out_path.name}: {exc}")
        return None
    return out_path


async def _snapshot(settings: LoadTestSettings, recorder: ResultRecorder, label: str) -> None:
    if not settings.metrics_url:
        return
    out = recorder.artifact_dir / f"metrics_{label}.prom"
    path = await asyncio.get_running_loop().run_in_executor(None, snapshot_metrics, settings.metrics_url, out)
    if path:
        recorder.record_metrics(label, path)


async def start_servers(
    registry: ProcessRegistry,
    servers: List[ServerSpec],
    artifact_dir: Path,
    print_output: bool = False,
    filters: Optional[List[str]] = None,
) -> None:
    managed = []
    for spec in servers:
        proc = await registry.spawn(
            spec.name,
            spec.argv,
            log_path=artifact_dir / f"{spec.name}.log",
            cwd=Path(spec.cwd) if spec.cwd else None,
            env=spec.env,
            print_output=print_output,
            filters=filters,
        )
        managed.append((spec, proc))
    waiters = [asyncio.ensure_future(proc.wait_ready(spec.ready_pattern, spec.ready_timeout)) for spec, proc in managed]
    try:
        await asyncio.gather(*waiters)
    finally:
        # Stop the remaining readiness waits and collect their errors.
        for waiter in waiters:
            if not waiter.done():
                waiter.cancel()
        await asyncio.gather(*waiters, return_exceptions=True)


async def run_loadtest(
    settings: LoadTestSettings,
    recorder: ResultRecorder,
    output: StatsOutput,
    registry: Optional[ProcessRegistry] = None,
) -> RunResult:
    artifact_dir = recorder.artifact_dir
    registry = registry or ProcessRegistry()
    program = load_agent_program(Path(settings.agent_program) if settings.agent_program else None)
    launcher = AgentLauncher(registry, program_text=program, start_timeout=settings.agent_start_timeout)

    def on_phase(phase: Phase) -> None:
        recorder.record_phase(phase.value)
        _log_progress(artifact_dir, f"[runner] phase {phase.value}")
        print(f"[runner] {phase.value.replace('_', ' ').lower()}", file=sys.stderr)

    def on_stats(sample: StatsSample, final: bool) -> None:
        output.write(sample.raw, sample.elapsed_s)
        recorder.record_sample(sample.raw, sample.elapsed_s, p10=sample.p10, final=final)

    try:
        if settings.servers:
            _log_progress(artifact_dir, f"[runner] starting {len(settings.servers)} server(s)")
            await start_servers(registry, settings.servers, artifact_dir, settings.server_log, settings.server_grep)

        argv = build_agent_argv(
            settings.server_endpoint(),
            python=settings.python,
            no_ssl=settings.no_tls,
            remote=build_remote_spec(settings.client_machine, settings.ssh_options),
        )
        _log_progress(artifact_dir, "[runner] launching remote agent")
        channel = await launcher.launch(argv)
        _log_progress(artifact_dir, "[runner] remote agent ready")

        await _snapshot(settings, recorder, "before")
        orchestrator = TestOrchestrator(
            CommandDispatcher(channel, verbose=settings.verbose),
            settings.params,
            on_stats=on_stats,
            on_phase=on_phase,
        )
        result = await orchestrator.run()
        recorder.outcome = result.outcome.value
        recorder.summary = result.summary
        await _snapshot(settings, recorder, "after")
        return result
    finally:
        await launcher.close()
        await registry.shutdown_all()


async def _run_with_signals(
    settings: LoadTestSettings,
    recorder: ResultRecorder,
    output: StatsOutput,
    registry: Optional[ProcessRegistry] = None,
) -> RunResult:
    loop = asyncio.get_running_loop()
    task = asyncio.ensure_future(run_loadtest(settings, recorder, output, registry))
    for signum in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(signum, task.cancel)
        except (NotImplementedError, RuntimeError):
            pass
    try:
        return await task
    finally:
        for signum in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.remove_signal_handler(signum)
            except (NotImplementedError, RuntimeError):
                pass


def _plan(settings: LoadTestSettings, artifact_dir: Path, argv: List[str]) -> Dict:
    params = asdict(settings.params)
    return {
        "params": params,
        "client_machine": settings.client_machine,
        "server": settings.server_endpoint(),
        "no_tls": settings.no_tls,
        "agent_argv": argv,
        "servers": [asdict(spec) for spec in settings.servers],
        "artifact_dir": str(artifact_dir),
    }


def execute_loadtest(
    settings: LoadTestSettings,
    dry_run: bool = False,
    artifact_root: Optional[str] = None,
) -> str:
    artifact_dir = ensure_artifact_dir(Path(artifact_root) if artifact_root else None)
    argv = build_agent_argv(
        settings.server_endpoint(),
        python=settings.python,
        no_ssl=settings.no_tls,
        remote=build_remote_spec(settings.client_machine, settings.ssh_options),
    )
    plan = _plan(settings, artifact_dir, argv)
    (artifact_dir / "plan.json").write_text(json.dumps(plan, indent=2), encoding="utf-8")
    ts = datetime.now().isoformat(timespec="seconds")
    params = settings.params
    print(f"[{ts}] Users={params.users} Rooms={params.rooms} Rate={params.rate:g} "
          f"Duration={params.duration:g}s Artifacts={artifact_dir}")
    _log_progress(artifact_dir, "[runner] wrote plan.json")

    if dry_run:
        _log_progress(artifact_dir, "[runner] dry-run mode; no processes launched")
        try:
            print(json.dumps(plan, indent=2))
        except BrokenPipeError:
            pass
        return str(artifact_dir)

    output_path = Path(settings.output_path).expanduser() if settings.output_path else artifact_dir / "stats.tsv"
    output = StatsOutput(output_path)
    recorder = ResultRecorder(artifact_dir, plan)
    captured_exception: Optional[BaseException] = None
    try:
        asyncio.run(_run_with_signals(settings, recorder, output))
    except BaseException as exc:
        captured_exception = exc
        _log_progress(artifact_dir, f"[runner] exception: {type(exc).__name__}: {exc}")
    finally:
        plan["stats_output"] = str(output_path)
        if captured_exception is not None:
            plan["runner_exception"] = {
                "type": type(captured_exception).__name__,
                "message": str(captured_exception),
            }
        recorder.finalize()
        _log_progress(artifact_dir, "[runner] run_result.json written")

    if captured_exception is not None:
        raise captured_exception
    _log_progress(artifact_dir, "[runner] run complete")
    return str(artifact_dir)


def run_loadtest_cli(args: argparse.Namespace) -> None:
    try:
        settings = build_settings(load_config(args.config), args)
        execute_loadtest(settings, dry_run=args.dry_run, artifact_root=args.artifact_root)
    except (ProcessLaunchError, CommandTimeout, CommandFailed, ChannelClosed, ValueError, FileNotFoundError) as exc:
        print(f"[loadtest_runner] error: {exc}", file=sys.stderr)
        raise SystemExit(2)
    except (KeyboardInterrupt, asyncio.CancelledError):
        print("[loadtest_runner] interrupted; servers and agent stopped", file=sys.stderr)
        raise SystemExit(130)


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Drive a chat server load test through a remote agent")
    parser.add_argument("-c", "--client-machine", help="SSH destination that runs the traffic agent")
    parser.add_argument("-u", "--users", type=int)
    parser.add_argument("-k", "--rooms", type=int)
    parser.add_argument("--rate", type=float, help="Target rate in msg/sec")
    parser.add_argument("--duration", type=float, help="Measurement duration in seconds")
    parser.add_argument("--stat-interval", dest="stat_interval", type=float)
    parser.add_argument("-w", "--warmup", help="Warmup schedule rate:duration,...")
    parser.add_argument("-o", "--output", help="Append stats samples to this file")
    parser.add_argument("-v", "--verbose", action="count", default=0)
    parser.add_argument("-n", "--no-tls", action="store_true")
    parser.add_argument("--server", help="Address the agent should connect to")
    parser.add_argument("--python", help="Python interpreter on the client machine")
    parser.add_argument("--config", help="YAML file overriding configs/loadtest/default.yaml")
    parser.add_argument("-S", "--server-log", action="store_true", help="Pass server output through")
    parser.add_argument("--server-grep", action="append", help="Only pass through server lines matching this regex")
    parser.add_argument("--dry-run", action="store_true")
    parser.add_argument(
        "--artifact-root",
        default=None,
        help="Override artifact root (default: artifacts/loadtest).",
    )
    return parser.parse_args(argv)


def main() -> None:
    run_loadtest_cli(parse_args())


if __name__ == "__main__":
    main()
