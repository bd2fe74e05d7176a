# models.py
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, List, Optional, Set


def utc_now_iso():
    return datetime.now(timezone.utc).isoformat()


@dataclass(frozen=True)
class WorkUnit:
    target: str
    command: str
    created_at: str = field(default_factory=utc_now_iso)
    attempt: int = 0   # bumped every time a stalled run is re-queued

    def __post_init__(self):
        if not isinstance(self.target, str) or not self.target.strip():
            raise ValueError("target must be a non-empty string")


@dataclass
class InFlightJob:
    unit: WorkUnit
    process: Any               # runner.RunningProcess
    started_at: float          # dispatcher clock, not wall time
    last_output_snapshot: str = ""
    last_progress_time: Optional[float] = None
    warned: Set[float] = field(default_factory=set)


@dataclass
class JobResult:
    target: str
    output: List[str]
    succeeded: bool
    error_line: Optional[str] = None
    state: str = "completed"   # completed | failed | dead
    attempts: int = 1
    duration_seconds: Optional[float] = None
