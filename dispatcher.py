# dispatcher.py
import sys
import time
from collections import deque
from dataclasses import dataclass, field, replace
from typing import Deque, List, Optional, Tuple

from models import InFlightJob, JobResult, WorkUnit, utc_now_iso
from stall import STALLED, WARNING, StallDetector


def print_log(message):
    # stderr, so stdout carries nothing but results
    print(message, file=sys.stderr, flush=True)


@dataclass
class DispatcherSettings:
    parallelism: int = 4
    timeout: float = 60.0
    poll_interval: float = 1.0
    warn_at: Tuple[float, ...] = ()
    max_retries: Optional[int] = None   # stall re-queues allowed per unit, None = no cap

    def __post_init__(self):
        if self.parallelism < 1:
            raise ValueError("parallelism must be at least 1")
        if self.timeout <= 0:
            raise ValueError("timeout must be positive")
        if self.poll_interval <= 0:
            raise ValueError("poll_interval must be positive")
        if self.max_retries is not None and self.max_retries < 0:
            raise ValueError("max_retries must be >= 0 (or unset for no cap)")
        self.warn_at = tuple(sorted(float(w) for w in self.warn_at))


@dataclass
class DispatcherState:
    """Everything one run() invocation mutates. Never shared between runs."""
    queue: Deque[WorkUnit] = field(default_factory=deque)
    in_flight: List[InFlightJob] = field(default_factory=list)
    peak_in_flight: int = 0
    requeued: int = 0


class Dispatcher:
    """
    Fans WorkUnits out to a ProcessRunner, at most `parallelism` processes at a time.

    The control loop is single-threaded: it admits queued units, collects
    finished processes, kills and re-queues stalled ones (at the queue tail),
    then sleeps for `poll_interval`. Results are yielded as they come in.
    """

    def __init__(self, runner, settings=None, clock=time.monotonic, sleep=time.sleep, log=print_log):
        self.runner = runner
        self.settings = settings or DispatcherSettings()
        self.detector = StallDetector(self.settings.timeout, self.settings.warn_at)
        self._clock = clock
        self._sleep = sleep
        self._log = log
        self.state = None

    def run(self, units):
        """
        Check the client is installed, then return an iterator of JobResults.

        ClientNotFoundError is raised here, before anything is queued.
        """
        self.runner.check()
        self.state = DispatcherState(queue=deque(units))
        return self._loop(self.state)

    def run_all(self, units):
        return list(self.run(units))

    def _loop(self, state):
        try:
            while state.queue or state.in_flight:
                yield from self._admit(state)
                yield from self._sweep_completed(state)
                yield from self._sweep_stalled(state)
                if state.queue or state.in_flight:
                    self._sleep(self.settings.poll_interval)
        finally:
            # consumer stopped early or the loop was interrupted (Ctrl+C)
            for job in state.in_flight:
                try:
                    job.process.terminate()
                except OSError as e:
                    # one stubborn process must not leave the others running
                    self._log(f"[{utc_now_iso()}] ⚠ Job {job.unit.target}: kill failed ({e})")
                    continue
                self._log_transition(job.unit, "running", "killed", "(dispatcher stopped)")
            state.in_flight.clear()

    def _log_transition(self, unit, old_state, new_state, extra=""):
        self._log(f"[{utc_now_iso()}] Job {unit.target}: {old_state} → {new_state} {extra}".rstrip())

    def _admit(self, state):
        failed = []
        while state.queue and len(state.in_flight) < self.settings.parallelism:
            unit = state.queue.popleft()
            now = self._clock()
            try:
                process = self.runner.start(unit)
            except OSError as e:
                failed.append(JobResult(
                    target=unit.target,
                    output=[],
                    succeeded=False,
                    error_line=f"failed to start {self.runner.name}: {e}",
                    state="failed",
                    attempts=unit.attempt + 1,
                    duration_seconds=0.0,
                ))
                self._log_transition(unit, "queued", "failed", f"(spawn error: {e})")
                continue

            state.in_flight.append(InFlightJob(unit=unit, process=process, started_at=now))
            state.peak_in_flight = max(state.peak_in_flight, len(state.in_flight))
            self._log_transition(unit, "queued", "running",
                                 f"(attempt={unit.attempt + 1}, pid={getattr(process, 'pid', '-')})")
        return failed

    def _sweep_completed(self, state):
        results = []
        for job in list(state.in_flight):
            if not job.process.finished():
                continue
            state.in_flight.remove(job)

            lines = job.process.output_lines()
            exit_code = getattr(job.process, "exit_code", None)
            error = self.runner.error_line(job.unit, lines, exit_code)
            duration = self._clock() - job.started_at
            new_state = "completed" if error is None else "failed"

            results.append(JobResult(
                target=job.unit.target,
                output=lines,
                succeeded=error is None,
                error_line=error,
                state=new_state,
                attempts=job.unit.attempt + 1,
                duration_seconds=duration,
            ))
            extra = f"(duration={duration:.3f}s)" if error is None else f"(duration={duration:.3f}s, error={error})"
            self._log_transition(job.unit, "running", new_state, extra)
        return results

    def _sweep_stalled(self, state):
        results = []
        timeout = self.settings.timeout
        max_retries = self.settings.max_retries

        for job in list(state.in_flight):
            if job.process.finished():
                continue  # picked up by the next completion sweep

            now = self._clock()
            verdict = self.detector.observe(job, job.process.peek(), now)

            if verdict == WARNING:
                idle = self.detector.idle_seconds(job, now)
                self._log(f"[{utc_now_iso()}] ⚠ Job {job.unit.target}: no new output for "
                          f"{idle:.0f}s (stall timeout {timeout:g}s)")
                continue
            if verdict != STALLED:
                continue

            job.process.terminate()
            state.in_flight.remove(job)
            unit = job.unit

            if max_retries is not None and unit.attempt >= max_retries:
                error = f"stalled: no new output for more than {timeout:g}s (gave up after {unit.attempt + 1} attempts)"
                results.append(JobResult(
                    target=unit.target,
                    output=job.process.output_lines(),
                    succeeded=False,
                    error_line=error,
                    state="dead",
                    attempts=unit.attempt + 1,
                    duration_seconds=now - job.started_at,
                ))
                self._log_transition(unit, "stalled", "dead", f"(attempts={unit.attempt + 1})")
                continue

            state.queue.append(replace(unit, attempt=unit.attempt + 1, created_at=utc_now_iso()))
            state.requeued += 1
            self._log_transition(unit, "stalled", "queued",
                                 f"(no new output for more than {timeout:g}s, killed and re-queued at tail)")
        return results
