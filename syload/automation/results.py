#!/usr/bin/env python3
"""Stats output sink and the per-run result summary."""

from __future__ import annotations

import json
import sys
from dataclasses import dataclass, field, asdict
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional


class StatsOutput:
    """Append-only file of ``<elapsed>\\t<stats line>`` records.

    Write failures are reported and swallowed; losing a sample never stops a
    running test.
    """

    def __init__(self, path: Path):
        self.path = Path(path)
        self.records = 0
        self.errors = 0
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            self._report(exc)

    @classmethod
    def open(cls, path: Optional[str]) -> Optional["StatsOutput"]:
        if not path:
            return None
        return cls(Path(path).expanduser())

    def write(self, stats: str, elapsed_s: float) -> None:
        try:
            with self.path.open("a", encoding="utf-8") as f:
                f.write(f"{elapsed_s:.3f}\t{stats}\n")
            self.records += 1
        except OSError as exc:
            self._report(exc)

    def _report(self, exc: OSError) -> None:
        self.errors += 1
        print(f"[output] failed to write {self.path}: {exc}", file=sys.stderr)


def read_stats_output(path: Path) -> List[Dict]:
    rows: List[Dict] = []
    try:
        lines = Path(path).read_text(encoding="utf-8").splitlines()
    except FileNotFoundError:
        return rows
    for line in lines:
        elapsed, _, stats = line.partition("\t")
        try:
            rows.append({"elapsed_s": float(elapsed), "stats": stats})
        except ValueError:
            continue
    return rows


@dataclass
class SampleRecord:
    elapsed_s: float
    stats: str
    p10: Optional[float] = None
    final: bool = False


@dataclass
class ResultRecorder:
    artifact_dir: Path
    plan: Dict
    samples: List[SampleRecord] = field(default_factory=list)
    phases: List[str] = field(default_factory=list)
    outcome: Optional[str] = None
    summary: Optional[str] = None
    metrics_snapshots: Dict[str, str] = field(default_factory=dict)

    def record_sample(self, stats: str, elapsed_s: float, p10: Optional[float] = None, final: bool = False):
        self.samples.append(SampleRecord(elapsed_s=round(elapsed_s, 3), stats=stats, p10=p10, final=final))

    def record_phase(self, phase: str):
        self.phases.append(phase)

    def record_metrics(self, label: str, path: Path):
        self.metrics_snapshots[label] = str(path.relative_to(self.artifact_dir))

    def finalize(self):
        payload = {
            "plan": self.plan,
            "phases": self.phases,
            "outcome": self.outcome,
            "summary": self.summary,
            "samples": [asdict(record) for record in self.samples],
            "metrics_snapshots": self.metrics_snapshots,
            "generated_at": datetime.utcnow().isoformat() + "Z",
        }
        (self.artifact_dir / "run_result.json").write_text(json.dumps(payload, indent=2), encoding="utf-8")
