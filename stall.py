# stall.py
"""
Liveness heuristic for external client processes.

The wrapped clients give no "still alive" signal, so a change in captured
output stands in for progress. A healthy client that prints nothing for a
long time looks exactly like a hung one; pick the timeout with that in mind.
"""

PROGRESS = "progress"
WAITING = "waiting"
WARNING = "warning"
STALLED = "stalled"


class StallDetector:
    def __init__(self, timeout, warn_at=()):
        if timeout <= 0:
            raise ValueError("timeout must be positive")
        self.timeout = timeout
        # checkpoints at or past the timeout would never fire before the stall itself
        self.warn_at = sorted(w for w in warn_at if 0 < w < timeout)

    def observe(self, job, output, now):
        """
        Compare the current output of an in-flight job with its last snapshot
        and update the job's stall clock. Returns PROGRESS, WAITING, WARNING or STALLED.
        """
        if output != job.last_output_snapshot:
            job.last_output_snapshot = output
            job.last_progress_time = now
            job.warned.clear()
            return PROGRESS

        if job.last_progress_time is None:
            # first unchanged observation starts the clock, not the launch
            job.last_progress_time = now
            return WAITING

        elapsed = now - job.last_progress_time
        if elapsed > self.timeout:
            return STALLED

        due = [w for w in self.warn_at if w <= elapsed and w not in job.warned]
        if due:
            job.warned.update(due)
            return WARNING
        return WAITING

    def idle_seconds(self, job, now):
        if job.last_progress_time is None:
            return 0.0
        return now - job.last_progress_time
