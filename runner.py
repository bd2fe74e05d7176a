# runner.py
import os
import shutil
import signal
import subprocess
import threading


class ClientNotFoundError(RuntimeError):
    """Raised before dispatching when the external client binary cannot be located."""


def locate_binary(binary, home_env=None):
    """
    Find a client executable:
    - under $<home_env>/bin when that variable is set (no PATH fallback then)
    - otherwise on PATH
    """
    home = os.environ.get(home_env) if home_env else None
    if home:
        candidate = os.path.join(home, "bin", binary)
        if os.path.isfile(candidate) and os.access(candidate, os.X_OK):
            return candidate
        raise ClientNotFoundError(f"{binary} not found under ${home_env}/bin ({candidate})")

    found = shutil.which(binary)
    if not found:
        hint = f"set ${home_env} or add it to PATH" if home_env else "add it to PATH"
        raise ClientNotFoundError(f"{binary} not found: {hint}")
    return found


class RunningProcess:
    """One external client process with its combined stdout/stderr collected in the background."""

    def __init__(self, popen, stdin_text=None, kill_grace=3.0, drain_grace=0.2):
        self.popen = popen
        self.kill_grace = kill_grace
        self.drain_grace = drain_grace
        self._lines = []
        self._lock = threading.Lock()
        self._reader = threading.Thread(target=self._read, daemon=True)
        self._reader.start()
        if popen.stdin is not None:
            threading.Thread(target=self._feed, args=(stdin_text or "",), daemon=True).start()

    @property
    def pid(self):
        return self.popen.pid

    @property
    def exit_code(self):
        return self.popen.returncode

    def _read(self):
        for line in self.popen.stdout:
            with self._lock:
                self._lines.append(line.rstrip("\r\n"))
        self.popen.stdout.close()

    def _feed(self, text):
        try:
            self.popen.stdin.write(text)
            self.popen.stdin.close()
        except (BrokenPipeError, OSError):
            # client exited before reading all of its input; its output still tells why
            return

    def peek(self):
        """Output collected so far, without waiting for or consuming anything."""
        with self._lock:
            return "\n".join(self._lines)

    def finished(self):
        return self.popen.poll() is not None

    def output_lines(self):
        # the pipe may still hold a tail after the process exit is noticed
        self._reader.join(timeout=self.drain_grace)
        if self.finished():
            # whatever is left in the client's process group outlived it and may hold the pipe open
            self._signal(signal.SIGTERM)
            self._reader.join(timeout=self.drain_grace)
            if self._reader.is_alive():
                self._signal(signal.SIGKILL if os.name == "posix" else signal.SIGTERM)
                self._reader.join(timeout=self.drain_grace)
        with self._lock:
            return list(self._lines)

    def _signal(self, sig):
        # the client runs in its own session, so a shell wrapper takes its children down with it
        if os.name == "posix":
            try:
                os.killpg(self.popen.pid, sig)
            except ProcessLookupError:
                return
        else:
            self.popen.send_signal(sig)

    def terminate(self):
        if self.popen.poll() is None:
            self._signal(signal.SIGTERM)
            try:
                self.popen.wait(timeout=self.kill_grace)
            except subprocess.TimeoutExpired:
                if os.name == "posix":
                    self._signal(signal.SIGKILL)
                else:
                    self.popen.kill()
                self.popen.wait()
        self._reader.join(timeout=self.kill_grace)


class ProcessRunner:
    """
    Runs one WorkUnit as one external process.

    Subclasses say which binary to run, how the command text reaches it
    (argv or stdin) and which output prefixes mark an error.
    """

    name = "process"
    binary = None
    home_env = None
    shell = False
    error_prefixes = ()

    def __init__(self):
        self._executable = None

    def check(self):
        """Pre-flight: raise ClientNotFoundError if the client is not installed."""
        if self.binary is not None:
            self._executable = locate_binary(self.binary, self.home_env)

    @property
    def executable(self):
        if self._executable is None and self.binary is not None:
            self._executable = locate_binary(self.binary, self.home_env)
        return self._executable

    def argv(self, unit):
        raise NotImplementedError

    def stdin_text(self, unit):
        return None

    def env(self, unit):
        return None

    def start(self, unit):
        stdin_text = self.stdin_text(unit)
        popen = subprocess.Popen(
            self.argv(unit),
            shell=self.shell,
            stdin=subprocess.PIPE if stdin_text is not None else subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            text=True,
            errors="replace",
            env=self.env(unit),
            start_new_session=os.name == "posix",
        )
        return RunningProcess(popen, stdin_text)

    def error_line(self, unit, lines, exit_code=None):
        """First output line carrying a known error prefix, or None."""
        for line in lines:
            stripped = line.strip()
            if stripped.startswith(self.error_prefixes):
                return stripped
        return None


class ShellRunner(ProcessRunner):
    name = "shell"
    shell = True

    def __init__(self, error_prefixes=()):
        super().__init__()
        self.error_prefixes = tuple(error_prefixes)

    def argv(self, unit):
        return unit.command

    def error_line(self, unit, lines, exit_code=None):
        line = super().error_line(unit, lines, exit_code)
        if line is None and exit_code:
            return f"exit code {exit_code}"
        return line


class SqlPlusRunner(ProcessRunner):
    """sqlplus in silent /nolog mode; the login and the SQL are piped on stdin."""

    name = "sqlplus"
    binary = "sqlplus"
    home_env = "ORACLE_HOME"
    error_prefixes = ("ORA-", "SP2-", "TNS-")

    def __init__(self, user=None, password=None):
        super().__init__()
        self.user = user
        self.password = password

    def login(self, target):
        if not self.user:
            return f"/@{target}"  # wallet / OS authentication
        if self.password:
            return f"{self.user}/{self.password}@{target}"
        return f"{self.user}@{target}"

    def argv(self, unit):
        return [self.executable, "-S", "/nolog"]

    def stdin_text(self, unit):
        # placeholders are already filled in; a stray & must not make sqlplus prompt on stdin
        return f"CONNECT {self.login(unit.target)}\nSET DEFINE OFF\n{unit.command.rstrip()}\nEXIT\n"


class MySqlRunner(ProcessRunner):
    name = "mysql"
    binary = "mysql"
    home_env = "MYSQL_HOME"
    error_prefixes = ("ERROR ",)

    def __init__(self, user=None, password=None, port=None, database=None):
        super().__init__()
        self.user = user
        self.password = password
        self.port = port
        self.database = database

    def argv(self, unit):
        args = [self.executable, "--batch", "--host", unit.target]
        if self.port:
            args += ["--port", str(self.port)]
        if self.user:
            args += ["--user", self.user]
        if self.database:
            args.append(self.database)
        return args

    def stdin_text(self, unit):
        return unit.command.rstrip() + "\n"

    def env(self, unit):
        if not self.password:
            return None
        # keeps the password out of the process list
        env = dict(os.environ)
        env["MYSQL_PWD"] = self.password
        return env


class TnsPingRunner(ProcessRunner):
    name = "tnsping"
    binary = "tnsping"
    home_env = "ORACLE_HOME"
    error_prefixes = ("TNS-",)

    def argv(self, unit):
        return [self.executable, unit.target]

    def error_line(self, unit, lines, exit_code=None):
        line = super().error_line(unit, lines, exit_code)
        if line is not None:
            return line
        if not any(l.strip().startswith("OK (") for l in lines):
            return f"{unit.target} unreachable: no OK from listener"
        return None


RUNNERS = {
    ShellRunner.name: ShellRunner,
    SqlPlusRunner.name: SqlPlusRunner,
    MySqlRunner.name: MySqlRunner,
    TnsPingRunner.name: TnsPingRunner,
}


def make_runner(client, **options):
    try:
        runner_cls = RUNNERS[client]
    except KeyError:
        raise ValueError(f"unknown client '{client}' (choose from {', '.join(sorted(RUNNERS))})") from None
    return runner_cls(**options)
