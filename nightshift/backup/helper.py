# Stdlib imports
import datetime
import os
import pathlib
import re
import sys
import typing

# Vendor imports
import humanize
import rich
import rich.errors
import rich.text
import sh
import yaml

# Timestamp format used in archive names. Lexicographic order is chronological order.
TIMESTAMP_FORMAT = r"%Y%m%d_%H%M%S"

# Timestamp prefix used for every line in the log file
LOG_TIMESTAMP_FORMAT = r"%Y-%m-%d %H:%M:%S"

# Toggled by the CLI's --verbose flag
verbose = False

_log_handle: typing.Optional[typing.TextIO] = None


def attach_log_file(path: pathlib.Path) -> bool:
    """Mirror all console output into an append-only log file. Returns False if the file can't be opened."""
    global _log_handle
    detach_log_file()
    try:
        _log_handle = path.open("a", encoding="utf-8")
    except OSError as err:
        _log_handle = None
        print_warning(f"Warning: Unable to open log file '{path}': {err}")
        return False
    return True


def log_attached() -> bool:
    return _log_handle is not None


def detach_log_file():
    global _log_handle
    if _log_handle is not None:
        _log_handle.close()
        _log_handle = None


def plain_text(*args) -> str:
    text = " ".join(str(arg) for arg in args)
    try:
        return rich.text.Text.from_markup(text).plain
    except rich.errors.MarkupError:
        return text


def _write_log(*args):
    if _log_handle is None or not args:
        return
    stamp = datetime.datetime.now().strftime(LOG_TIMESTAMP_FORMAT)
    _log_handle.write(f"{stamp} - {plain_text(*args)}\n")
    _log_handle.flush()


def print(*args, file=None):
    rich.print(*args, file=file)
    _write_log(*args)


def print_line(*args, file=None):
    print("-" * 8, *args, file=file)


def print_nested_line(*args, file=None):
    print("-" * 12, *args, file=file)


def print_detail(*args):
    if verbose:
        print_nested_line("[dim]" + " ".join(str(arg) for arg in args))


def print_warning(message: str):
    print_line(f"[yellow]{message}", file=sys.stderr)


def print_error(message: str, code: int = 1):
    print("-" * 8, f"[red]{message}", file=sys.stderr)
    sys.exit(code)


def print_config_data(data: typing.Any):
    serialized: str = yaml.dump(data, sort_keys=False)
    print("\n".join("|  " + line for line in serialized.splitlines()))


def human_readable(num):
    return humanize.naturalsize(num, binary=True)


def human_age(delta: datetime.timedelta) -> str:
    return humanize.naturaldelta(delta)


def utc_now() -> datetime.datetime:
    return datetime.datetime.now(datetime.timezone.utc)


def make_timestamp(now: datetime.datetime) -> str:
    # Ages are compared in UTC, but archive names use local wall-clock time
    if now.tzinfo is not None:
        now = now.astimezone()
    return now.strftime(TIMESTAMP_FORMAT)


_duration_units = {
    "s": "seconds",
    "m": "minutes",
    "h": "hours",
    "d": "days",
    "w": "weeks",
}


def parse_duration(value: str) -> datetime.timedelta:
    """Parse a duration like '7d', '12h' or '2w' into a timedelta."""
    match = re.fullmatch(r"\s*(\d+)\s*([smhdw])\s*", value.lower())
    if not match:
        raise ValueError(
            f"Invalid duration '{value}'. Expected a number followed by one of: {', '.join(_duration_units)}"
        )
    amount = int(match.group(1))
    return datetime.timedelta(**{_duration_units[match.group(2)]: amount})


def maximize_niceness():
    os.nice(20)


def run_command_politely(
    command: sh.Command,
    args: list[typing.Any],
    env: typing.Optional[dict] = None,
    okCodes: typing.Sequence[int] = (0,),
    nice: bool = True,
):
    options: dict[str, typing.Any] = {"_bg": True, "_ok_code": list(okCodes)}
    if nice:
        options["_preexec_fn"] = maximize_niceness
    if env is not None:
        options["_env"] = env

    # Start the command
    running_proc = command(*args, **options)

    # The running process should not be a string
    assert isinstance(running_proc, sh.RunningCommand)

    # Wait for it to finish. On interrupt the process is killed and the
    # interrupt is passed on so the caller can clean up after it.
    try:
        running_proc.wait()
    except (KeyboardInterrupt, SystemExit):
        print_warning("Interrupt detected")
        if running_proc.is_alive():
            print_warning("Killing the running process...")
            running_proc.kill()
        raise

    return running_proc
