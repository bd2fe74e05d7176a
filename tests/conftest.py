import pytest

from runner import ClientNotFoundError, ProcessRunner


class FakeClock:
    """Monotonic clock that only moves when the dispatcher sleeps."""

    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now

    def sleep(self, seconds):
        self.now += seconds


def script(finish_at=None, lines=(), exit_code=0):
    """
    Behaviour of one fake client run:
    finish_at - seconds after start when the process exits (None = hangs forever)
    lines     - (seconds after start, text) pairs, visible once that time has passed
    """
    return {"finish_at": finish_at, "lines": list(lines), "exit_code": exit_code}


class FakeProcess:
    def __init__(self, runner, unit, behaviour, pid):
        self.runner = runner
        self.unit = unit
        self.behaviour = behaviour
        self.pid = pid
        self.started_at = runner.clock()
        self.terminated_at = None

    def _elapsed(self):
        end = self.terminated_at if self.terminated_at is not None else self.runner.clock()
        return end - self.started_at

    def _visible(self):
        elapsed = self._elapsed()
        return [text for at, text in self.behaviour["lines"] if at <= elapsed]

    @property
    def exit_code(self):
        return self.behaviour["exit_code"] if self.finished() else None

    def peek(self):
        return "\n".join(self._visible())

    def finished(self):
        if self.terminated_at is not None:
            return True
        finish_at = self.behaviour["finish_at"]
        return finish_at is not None and self._elapsed() >= finish_at

    def output_lines(self):
        self.runner.running.discard(self)
        return self._visible()

    def terminate(self):
        if self.unit.target in self.runner.kill_errors:
            raise PermissionError(1, "Operation not permitted")
        if self.terminated_at is None:
            self.terminated_at = self.runner.clock()
        self.runner.running.discard(self)
        self.runner.terminated.append((self.terminated_at, self.unit.target, self.unit.attempt))


class FakeRunner(ProcessRunner):
    """
    Scripted client: scripts[target] is a list of behaviours, one per attempt;
    the last one repeats for further attempts.
    """

    name = "fake"
    error_prefixes = ("ORA-", "TNS-")

    def __init__(self, clock, scripts, missing=False, spawn_errors=(), kill_errors=()):
        super().__init__()
        self.clock = clock
        self.scripts = scripts
        self.missing = missing
        self.spawn_errors = set(spawn_errors)
        self.kill_errors = set(kill_errors)
        self.started = []      # (time, target, attempt)
        self.terminated = []   # (time, target, attempt)
        self.running = set()
        self.max_running = 0

    def check(self):
        if self.missing:
            raise ClientNotFoundError("fakeclient not found: add it to PATH")

    def start(self, unit):
        if unit.target in self.spawn_errors:
            raise FileNotFoundError(2, "No such file or directory", "fakeclient")
        behaviours = self.scripts[unit.target]
        behaviour = behaviours[min(unit.attempt, len(behaviours) - 1)]
        process = FakeProcess(self, unit, behaviour, pid=1000 + len(self.started))
        self.started.append((self.clock(), unit.target, unit.attempt))
        self.running.add(process)
        self.max_running = max(self.max_running, len(self.running))
        return process


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def log_lines():
    return []


@pytest.fixture
def tmp_db(tmp_path, monkeypatch):
    path = tmp_path / "dbfan.db"
    monkeypatch.setenv("DBFAN_DB", str(path))
    return path
