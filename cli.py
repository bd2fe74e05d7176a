# cli.py
import click

from dispatcher import Dispatcher, DispatcherSettings
from runner import ClientNotFoundError, ShellRunner, TnsPingRunner, make_runner
from storage import Storage
from templates import build_units, parse_params, read_targets

# Defaults per command, used when neither an option nor a config key is set
VARIANT_DEFAULTS = {
    "ping": {"parallelism": "8", "timeout": "15", "poll_interval": "0.5", "warn_at": "5,10"},
    "query": {"parallelism": "4", "timeout": "300", "poll_interval": "3", "warn_at": "60,120"},
    "run": {"parallelism": "4", "timeout": "60", "poll_interval": "1", "warn_at": ""},
}

EXIT_FAILED_TARGETS = 1
EXIT_CONFIG_ERROR = 2


def parse_warn_at(value):
    if value is None or not str(value).strip():
        return ()
    try:
        return tuple(float(v) for v in str(value).split(",") if v.strip())
    except ValueError:
        raise ValueError(f"invalid warn-at list '{value}' (expected e.g. 5,10)") from None


def parse_max_retries(value):
    if value is None or str(value).strip().lower() in ("", "none", "unlimited"):
        return None
    return int(value)


def load_settings(db, command, parallelism=None, timeout=None, poll_interval=None, warn_at=None, max_retries=None):
    """Option > '<command>.<key>' config > '<key>' config > command default."""
    defaults = VARIANT_DEFAULTS[command]

    def pick(key, override):
        if override is not None:
            return override
        return db.lookup(command, key, defaults.get(key))

    try:
        return DispatcherSettings(
            parallelism=int(pick("parallelism", parallelism)),
            timeout=float(pick("timeout", timeout)),
            poll_interval=float(pick("poll_interval", poll_interval)),
            warn_at=parse_warn_at(pick("warn_at", warn_at)),
            max_retries=parse_max_retries(pick("max_retries", max_retries)),
        )
    except ValueError as e:
        raise click.UsageError(f"invalid dispatcher setting: {e}")


def dispatch_options(f):
    """Targets and the dispatcher knobs shared by every fan-out command."""
    options = [
        click.argument("targets", nargs=-1),
        click.option("--targets-file", type=click.File("r"), default=None,
                     help="File with one target per line ('#' comments allowed)"),
        click.option("--parallelism", default=None, type=int, help="Max concurrent client processes (uses config if set)"),
        click.option("--timeout", default=None, type=float,
                     help="Seconds of unchanged output before a job counts as stalled (uses config if set)"),
        click.option("--poll-interval", default=None, type=float, help="Seconds between poll ticks (uses config if set)"),
        click.option("--warn-at", default=None, help="Comma list of idle seconds that trigger a stall warning"),
        click.option("--max-retries", default=None,
                     help="Stall re-queues allowed per target ('unlimited' by default)"),
    ]
    for option in reversed(options):
        f = option(f)
    return f


def collect_targets(targets, targets_file):
    collected = list(targets)
    if targets_file is not None:
        collected += read_targets(targets_file)
    if not collected:
        raise click.UsageError("no targets given")
    return collected


def echo_result(result, mode):
    if mode == "bool":
        click.echo(f"{result.target}: {result.succeeded}")
        return
    if mode == "ping":
        if result.succeeded:
            click.echo(f"{result.target}: ✅ reachable")
        else:
            click.echo(f"{result.target}: ❌ unreachable ({result.error_line})")
        return

    dur = f"{result.duration_seconds:.3f}s" if result.duration_seconds is not None else "-"
    click.echo(f"=== {result.target} | state={result.state} | attempts={result.attempts} | duration={dur}")
    for line in result.output:
        click.echo(line)
    if not result.succeeded:
        click.echo(f"❌ {result.error_line}")


def run_dispatch(command, runner, units, mode, settings_args):
    """Stream results for every unit; exits non-zero when any target failed."""
    ctx = click.get_current_context()
    db = Storage()
    try:
        settings = load_settings(db, command, **settings_args)
    finally:
        db.close()

    dispatcher = Dispatcher(runner, settings)
    try:
        results = dispatcher.run(units)
    except ClientNotFoundError as e:
        click.echo(f"❌ {e}", err=True)
        ctx.exit(EXIT_CONFIG_ERROR)

    total = failed = 0
    for result in results:
        total += 1
        if not result.succeeded:
            failed += 1
        echo_result(result, mode)

    click.echo(f"📊 {total} target(s): {total - failed} succeeded, {failed} failed", err=True)
    ctx.exit(EXIT_FAILED_TARGETS if failed else 0)


def settings_args(parallelism, timeout, poll_interval, warn_at, max_retries):
    return {
        "parallelism": parallelism,
        "timeout": timeout,
        "poll_interval": poll_interval,
        "warn_at": warn_at,
        "max_retries": max_retries,
    }


def units_or_usage_error(targets, template, params=None):
    try:
        return build_units(targets, template, params)
    except ValueError as e:
        raise click.UsageError(str(e))


@click.group()
def cli():
    """dbfan - run one database operation against many targets in parallel"""
    pass


# ---------------- Ping ----------------
@cli.command()
@dispatch_options
@click.option("--full", is_flag=True, help="Print the full tnsping output instead of reachable/unreachable")
def ping(targets, targets_file, parallelism, timeout, poll_interval, warn_at, max_retries, full):
    """Check listener reachability of each target with tnsping"""
    targets = collect_targets(targets, targets_file)
    units = units_or_usage_error(targets, "{target}")
    run_dispatch("ping", TnsPingRunner(), units, "full" if full else "ping",
                 settings_args(parallelism, timeout, poll_interval, warn_at, max_retries))


# ---------------- Query ----------------
@cli.command()
@dispatch_options
@click.option("--sql", default=None, help="SQL text to run on every target")
@click.option("--file", "sql_file", type=click.File("r"), default=None, help="Read the SQL text from a file")
@click.option("--client", type=click.Choice(["sqlplus", "mysql"]), default="sqlplus", show_default=True)
@click.option("--user", default=None, help="Database user (sqlplus: wallet login if omitted)")
@click.option("--password", default=None, envvar="DBFAN_PASSWORD", help="Database password (or $DBFAN_PASSWORD)")
@click.option("--port", default=None, type=int, help="mysql only: server port")
@click.option("--database", default=None, help="mysql only: default database")
@click.option("--param", "params", multiple=True, help="Placeholder value, name=value (repeatable)")
@click.option("--bool", "bool_mode", is_flag=True, help="Print only True/False per target")
def query(targets, targets_file, parallelism, timeout, poll_interval, warn_at, max_retries,
          sql, sql_file, client, user, password, port, database, params, bool_mode):
    """Run a SQL statement against each target"""
    if (sql is None) == (sql_file is None):
        raise click.UsageError("give exactly one of --sql or --file")
    template = sql if sql is not None else sql_file.read()

    try:
        values = parse_params(params)
    except ValueError as e:
        raise click.UsageError(str(e))

    if user and password is None:
        # piped clients would otherwise read the first SQL line as the password
        password = click.prompt(f"Password for {user}", hide_input=True)

    options = {"user": user, "password": password}
    if client == "mysql":
        options.update(port=port, database=database)
    runner = make_runner(client, **options)

    targets = collect_targets(targets, targets_file)
    units = units_or_usage_error(targets, template, values)
    run_dispatch("query", runner, units, "bool" if bool_mode else "full",
                 settings_args(parallelism, timeout, poll_interval, warn_at, max_retries))


# ---------------- Run ----------------
@cli.command()
@dispatch_options
@click.option("--command", required=True, help="Shell command; {target} is replaced per target")
@click.option("--param", "params", multiple=True, help="Placeholder value, name=value (repeatable)")
@click.option("--error-prefix", "error_prefixes", multiple=True, help="Output prefix that marks a failure (repeatable)")
@click.option("--bool", "bool_mode", is_flag=True, help="Print only True/False per target")
def run(targets, targets_file, parallelism, timeout, poll_interval, warn_at, max_retries,
        command, params, error_prefixes, bool_mode):
    """Run a shell command once per target"""
    try:
        values = parse_params(params)
    except ValueError as e:
        raise click.UsageError(str(e))

    targets = collect_targets(targets, targets_file)
    units = units_or_usage_error(targets, command, values)
    run_dispatch("run", ShellRunner(error_prefixes=error_prefixes), units, "bool" if bool_mode else "full",
                 settings_args(parallelism, timeout, poll_interval, warn_at, max_retries))


# ---------------- Config management ----------------
@cli.group()
def config():
    """Stored defaults: parallelism, timeout, poll_interval, warn_at, max_retries (optionally '<command>.<key>')"""
    pass


@config.command("set")
@click.argument("key")
@click.argument("value")
def config_set(key, value):
    """Set a config key to a value"""
    db = Storage()
    db.set_config(key, value)
    click.echo(f"🛠️ Config '{key}' set to '{value}'.")


@config.command("get")
@click.argument("key")
@click.option("--default", default=None, help="Fallback if key not set")
def config_get(key, default):
    """Get a config key"""
    db = Storage()
    row = db.get_config_row(key)
    if not row:
        if default is not None:
            click.echo(f"{key}={default} (default)")
        else:
            click.echo(f"{key} not set")
        return
    click.echo(f"{key}={row['value']} (updated_at={row['updated_at']})")


@config.command("unset")
@click.argument("key")
def config_unset(key):
    """Remove a config key"""
    db = Storage()
    if db.unset_config(key):
        click.echo(f"🗑 Config '{key}' removed.")
    else:
        click.echo(f"{key} not set")


@config.command("list")
def config_list():
    """List all config keys"""
    db = Storage()
    rows = db.list_config()
    if not rows:
        click.echo("No config keys set.")
        return
    for row in rows:
        click.echo(f"{row['key']}={row['value']} (updated_at={row['updated_at']})")


# ---------------- Entrypoint ----------------
if __name__ == "__main__":
    cli()
