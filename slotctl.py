#!/usr/bin/env python3
"""
slotctl.py - CLI for SlotCTL (single-file edition)

Features:
- cap how many independent processes run a command at the same time
- shared state is a single counter file guarded by an advisory file lock
- atomic acquire/release of a slot (read, compare and write under one lock hold)
- fixed-interval retry while all slots are taken
- exactly-once release on normal exit, workload failure and signals
- simple config persisted to slotctl.json, overridable by env vars and flags
"""

import atexit
import json
import math
import os
import signal
import subprocess
import threading
import time
from contextlib import contextmanager
from pathlib import Path

import click
from filelock import FileLock

CONFIG_FILE = "slotctl.json"
DEFAULT_CONFIG = {
    "max_concurrent_jobs": 1,
    "retry_interval": 5,
    "semaphore_file": "./tmp/locks/semaphore.lock",
}
DEFAULT_SCRIPT = "./script.sh"

ACQUIRED = "acquired"
BUSY = "busy"

# Signals the release guard intercepts. SIGHUP does not exist on Windows.
GUARDED_SIGNALS = tuple(
    getattr(signal, name) for name in ("SIGINT", "SIGTERM", "SIGHUP") if hasattr(signal, name)
)

# sysexits.h EX_TEMPFAIL
EXIT_NOT_ACQUIRED = 75

# Shortest pause between attempts, whatever retry_interval says.
MIN_POLL_INTERVAL = 0.01


class SlotctlError(Exception):
    """Base class for errors raised by the semaphore layer."""


class AcquireTimeout(SlotctlError):
    pass


class AcquireCancelled(SlotctlError):
    pass


def say(msg, quiet=False, nl=True):
    if not quiet:
        click.echo(msg, err=True, nl=nl)


# ---------------- Semaphore store ----------------
class SemaphoreStore:
    """Counter file shared by every participating process.

    The file holds one non-negative integer and nothing else. All reads and
    writes happen under an exclusive lock on ``<path>.lock``.
    """

    def __init__(self, path):
        self.path = Path(path)
        self.lock_path = Path(f"{self.path}.lock")
        self._lock = FileLock(str(self.lock_path))

    def prepare(self):
        """Create the state directory and an empty counter file if missing.

        A directory created here also gets a ``.gitignore`` holding ``*``.
        """
        parent = self.path.parent
        if not parent.exists():
            parent.mkdir(parents=True, exist_ok=True)
            (parent / ".gitignore").write_text("*\n")
        self.path.touch(exist_ok=True)

    def _read(self):
        # Unreadable, empty or garbage content counts as 0.
        try:
            value = int(self.path.read_text().strip())
        except (OSError, ValueError):
            return 0
        return max(value, 0)

    def _write(self, value):
        tmp = self.path.with_name(f".{self.path.name}.{os.getpid()}.tmp")
        tmp.write_text(f"{value}\n")
        os.replace(tmp, self.path)

    def try_acquire(self, max_jobs):
        """Take one slot if fewer than ``max_jobs`` are held. Returns ACQUIRED or BUSY."""
        with self._lock:
            current = self._read()
            if current < max_jobs:
                self._write(current + 1)
                return ACQUIRED
            return BUSY

    def release(self):
        """Give back one slot. Never goes below zero. Returns the new count."""
        with self._lock:
            current = self._read()
            if current > 0:
                current -= 1
                self._write(current)
            return current

    def value(self):
        with self._lock:
            return self._read()


# ---------------- Release guard ----------------
class ReleaseGuard:
    """Gives back the slot held by this process exactly once.

    Every exit path (normal return, exception, atexit, signal) ends up in
    release(). The ``acquired`` flag says whether there is anything to give
    back; the ``released`` latch makes any later call a no-op.
    """

    def __init__(self, store, signals=GUARDED_SIGNALS, on_signal=None, quiet=False):
        self.store = store
        self.signals = signals
        self.on_signal = on_signal
        self.quiet = quiet
        self.acquired = False
        self.released = False
        self._previous = {}
        self._installed = False
        self._holding = 0
        self._pending = None
        self._handling = False

    def mark_acquired(self):
        self.acquired = True

    def release(self):
        say("Exit detected...", self.quiet)
        if not self.acquired:
            say("Lock not acquired, no decrement required", self.quiet)
            return False
        # Latch and decrement must not be split by a signal handler.
        with deferred_signals(self.signals):
            if self.released:
                return False
            self.released = True
            say("Decrementing the semaphore...", self.quiet)
            self.store.release()
        return True

    __call__ = release

    def install(self):
        if self._installed:
            return
        atexit.register(self.release)
        for signum in self.signals:
            self._previous[signum] = signal.signal(signum, self._handle_signal)
        self._installed = True

    def restore(self):
        if not self._installed:
            return
        atexit.unregister(self.release)
        for signum, handler in self._previous.items():
            signal.signal(signum, handler)
        self._previous = {}
        self._installed = False

    @contextmanager
    def holding(self):
        """Queue guarded signals for the duration of the block, then act on them.

        Unlike deferred_signals this does not touch the signal mask, so a
        child started inside the block does not inherit blocked signals.
        """
        self._holding += 1
        try:
            yield
        finally:
            self._holding -= 1
            if not self._holding and self._pending is not None:
                signum, self._pending = self._pending, None
                self._handle_signal(signum, None)

    def _handle_signal(self, signum, frame):
        if self._holding:
            self._pending = self._pending or signum
            return
        # A repeat signal while on_signal waits for the workload is dropped.
        if self._handling:
            return
        self._handling = True
        try:
            if self.on_signal is not None:
                self.on_signal(signum)
        finally:
            self.release()
            self.restore()
            # Die by the same signal so the parent sees how we ended.
            signal.signal(signum, signal.SIG_DFL)
            os.kill(os.getpid(), signum)

    def __enter__(self):
        self.install()
        return self

    def __exit__(self, exc_type, exc, tb):
        try:
            self.release()
        finally:
            self.restore()
        return False


@contextmanager
def deferred_signals(signals):
    """Hold back delivery of ``signals`` for the duration of the block (POSIX only)."""
    if not signals or not hasattr(signal, "pthread_sigmask"):
        yield
        return
    old = signal.pthread_sigmask(signal.SIG_BLOCK, signals)
    try:
        yield
    finally:
        signal.pthread_sigmask(signal.SIG_SETMASK, old)


# ---------------- Acquire loop ----------------
class AcquireLoop:
    def __init__(self, store, max_jobs=1, retry_interval=5, timeout=None, cancel=None, quiet=False):
        if max_jobs < 1:
            raise ValueError("max_jobs must be >= 1")
        if retry_interval < 0:
            raise ValueError("retry_interval must be >= 0")
        self.store = store
        self.max_jobs = max_jobs
        self.retry_interval = retry_interval
        self.timeout = timeout
        self.cancel = cancel or threading.Event()
        self.quiet = quiet
        self.attempts = 0

    def run(self, guard):
        """Poll until a slot is taken, then arm ``guard``.

        The store lock is held only inside a single try_acquire, never
        across the sleep. Retries forever unless a timeout or cancel event
        was given.
        """
        deadline = None if self.timeout is None else time.monotonic() + self.timeout
        while True:
            if self.cancel.is_set():
                raise AcquireCancelled("cancelled while waiting for a slot")
            self.attempts += 1
            # Counter write and arming must not be split by a signal handler.
            with deferred_signals(guard.signals):
                result = self.store.try_acquire(self.max_jobs)
                if result == ACQUIRED:
                    guard.mark_acquired()
            if result == ACQUIRED:
                if self.attempts > 1:
                    say("", self.quiet)
                return
            if deadline is not None and time.monotonic() >= deadline:
                raise AcquireTimeout(f"no free slot after {self.timeout}s")
            self._wait(deadline)

    def _wait(self, deadline):
        # A zero interval would spin on the file lock.
        remaining = max(self.retry_interval, MIN_POLL_INTERVAL)
        if deadline is not None:
            remaining = min(remaining, max(deadline - time.monotonic(), 0))
        while remaining > 0:
            say(
                f"\rMax concurrent jobs running, reattempting in {math.ceil(remaining)} seconds...",
                self.quiet,
                nl=False,
            )
            step = min(1, remaining)
            if self.cancel.wait(step):
                say("", self.quiet)
                raise AcquireCancelled("cancelled while waiting for a slot")
            remaining -= step


# ---------------- Workload ----------------
def exit_code_for(returncode):
    """Map a Popen return code to a shell-style exit status."""
    if returncode < 0:
        return 128 - returncode
    return returncode


def shares_process_group(proc):
    if not hasattr(os, "getpgid"):
        return False
    try:
        return os.getpgid(proc.pid) == os.getpgrp()
    except ProcessLookupError:
        return False


def forward_signal(proc, signum):
    """Pass ``signum`` on to the workload and wait until it has exited.

    A terminal Ctrl+C already reaches every process in the foreground group,
    so SIGINT is only sent to a workload running in a group of its own.
    Returns whether the signal was sent.
    """
    sent = False
    if proc.poll() is None:
        if not (signum == signal.SIGINT and shares_process_group(proc)):
            proc.send_signal(signum)
            sent = True
    # The slot stays taken until the workload is gone.
    reap(proc)
    return sent


def reap(proc):
    """Block until ``proc`` has exited and return its return code.

    Called from a signal handler, where Popen.wait() further up the stack
    may still hold Popen's internal lock, so POSIX goes to waitpid directly.
    """
    if os.name != "posix":
        return proc.wait()
    if proc.returncode is not None:
        return proc.returncode
    try:
        _, status = os.waitpid(proc.pid, 0)
    except ChildProcessError:
        # already reaped by Popen
        return proc.returncode
    proc.returncode = os.waitstatus_to_exitcode(status)
    return proc.returncode


def run_workload(command, guard):
    """Run ``command`` once; a guarded signal is forwarded to it before release."""
    with guard.holding():
        proc = subprocess.Popen(command)
        guard.on_signal = lambda signum: forward_signal(proc, signum)
    try:
        return proc.wait()
    finally:
        guard.on_signal = None


# ---------------- Config ----------------
def load_config(path=CONFIG_FILE):
    if not os.path.exists(path):
        cfg = dict(DEFAULT_CONFIG)
        save_config(cfg, path)
        return cfg
    with open(path, "r") as f:
        cfg = json.load(f)
    return {**DEFAULT_CONFIG, **cfg}


def save_config(cfg, path=CONFIG_FILE):
    with open(path, "w") as f:
        json.dump(cfg, f, indent=2)


def parse_setting(key, value):
    """Convert ``value`` to the type ``key`` needs. Raises ValueError if it does not fit."""
    if key == "max_concurrent_jobs":
        if isinstance(value, bool):
            raise ValueError(f"{key} must be a whole number, got {value!r}")
        try:
            v = int(str(value))
        except ValueError:
            raise ValueError(f"{key} must be a whole number, got {value!r}")
        if v < 1:
            raise ValueError(f"{key} must be >= 1")
        return v
    if key == "retry_interval":
        if isinstance(value, bool):
            raise ValueError(f"{key} must be a number of seconds, got {value!r}")
        try:
            v = float(value)
        except (TypeError, ValueError):
            raise ValueError(f"{key} must be a number of seconds, got {value!r}")
        if not v >= 0:
            raise ValueError(f"{key} must be >= 0")
        return v
    if key == "semaphore_file":
        if not isinstance(value, str) or not value:
            raise ValueError(f"{key} must be a non-empty path, got {value!r}")
        return value
    raise ValueError(f"Unknown config key: {key}. Known keys: {list(DEFAULT_CONFIG)}")


@click.group()
@click.option("--config", "config_path", default=CONFIG_FILE, envvar="SLOTCTL_CONFIG",
              show_default=True, help="Path of the JSON config file")
@click.option("--quiet", "-q", is_flag=True, help="Only print errors")
@click.pass_context
def cli(ctx, config_path, quiet):
    """slotctl - limit concurrent runs of a command using a shared counter file"""
    ctx.ensure_object(dict)
    ctx.obj["config_path"] = config_path
    ctx.obj["quiet"] = quiet


def settings(ctx, max_jobs=None, retry_interval=None, semaphore_file=None):
    cfg = load_config(ctx.obj["config_path"])
    try:
        if max_jobs is None:
            max_jobs = parse_setting("max_concurrent_jobs", cfg["max_concurrent_jobs"])
        if retry_interval is None:
            retry_interval = parse_setting("retry_interval", cfg["retry_interval"])
        if not semaphore_file:
            semaphore_file = parse_setting("semaphore_file", cfg["semaphore_file"])
    except ValueError as e:
        raise click.UsageError(f"Invalid config value: {e}")
    return max_jobs, retry_interval, semaphore_file


# ---------------- Run ----------------
@cli.command(context_settings={"ignore_unknown_options": True})
@click.option("--max-jobs", "-n", type=click.IntRange(min=1), default=None, envvar="MAX_CONCURRENT_JOBS",
              help="Upper bound on simultaneous slot holders [default: 1]")
@click.option("--retry-interval", "-r", type=click.FloatRange(min=0), default=None, envvar="RETRY_INTERVAL",
              help="Seconds between failed acquire attempts [default: 5]")
@click.option("--file", "semaphore_file", type=click.Path(dir_okay=False), default=None, envvar="SEMAPHORE_FILE",
              help="Semaphore counter file [default: ./tmp/locks/semaphore.lock]")
@click.option("--timeout", type=click.FloatRange(min=0), default=None,
              help="Give up after this many seconds instead of waiting forever")
@click.argument("command", nargs=-1, type=click.UNPROCESSED)
@click.pass_context
def run(ctx, max_jobs, retry_interval, semaphore_file, timeout, command):
    """Wait for a free slot, then run COMMAND (default ./script.sh).

    Exits with the command's own exit status. Put options meant for the
    command after `--`:

        slotctl run -n 2 -- make test
    """
    quiet = ctx.obj["quiet"]
    max_jobs, retry_interval, semaphore_file = settings(ctx, max_jobs, retry_interval, semaphore_file)
    store = SemaphoreStore(semaphore_file)
    store.prepare()

    command = list(command)
    if not command:
        script = Path(DEFAULT_SCRIPT)
        if script.exists():
            script.chmod(script.stat().st_mode | 0o100)
        command = [DEFAULT_SCRIPT]

    loop = AcquireLoop(store, max_jobs=max_jobs, retry_interval=retry_interval, timeout=timeout, quiet=quiet)
    rc = 0
    with ReleaseGuard(store, quiet=quiet) as guard:
        try:
            loop.run(guard)
        except SlotctlError as e:
            click.echo(f"Could not get a slot: {e}", err=True)
            raise SystemExit(EXIT_NOT_ACQUIRED)
        say(f"Slot acquired ({store.value()}/{max_jobs}), running: {' '.join(command)}", quiet)
        try:
            rc = exit_code_for(run_workload(command, guard))
        except FileNotFoundError as e:
            click.echo(f"Command not found: {e}", err=True)
            rc = 127
        except PermissionError as e:
            click.echo(f"Command not executable: {e}", err=True)
            rc = 126
    raise SystemExit(rc)


# ---------------- Status / Init / Config ----------------
@cli.command()
@click.option("--file", "semaphore_file", type=click.Path(dir_okay=False), default=None, envvar="SEMAPHORE_FILE",
              help="Semaphore counter file")
@click.pass_context
def status(ctx, semaphore_file):
    """Show how many slots are taken."""
    max_jobs, _, semaphore_file = settings(ctx, semaphore_file=semaphore_file)
    store = SemaphoreStore(semaphore_file)
    if store.path.exists():
        running = store.value()
    else:
        running = 0
    click.echo(f"Semaphore file: {store.path}")
    click.echo(f"Running jobs: {running}")
    click.echo(f"Max concurrent jobs: {max_jobs}")


@cli.command("init")
@click.pass_context
def init_cmd(ctx):
    """Create the state directory, counter file and default config"""
    _, _, semaphore_file = settings(ctx)
    SemaphoreStore(semaphore_file).prepare()
    click.echo(f"Initialized {semaphore_file} and {ctx.obj['config_path']}.")


@cli.group()
def config():
    """Configuration management"""
    pass


@config.command("set")
@click.argument("key")
@click.argument("value")
@click.pass_context
def config_set(ctx, key, value):
    path = ctx.obj["config_path"]
    cfg = load_config(path)
    try:
        v = parse_setting(key, value)
    except ValueError as e:
        click.echo(str(e), err=True)
        raise SystemExit(1)
    cfg[key] = v
    save_config(cfg, path)
    click.echo(f"Updated {key} = {v}")


@config.command("show")
@click.pass_context
def config_show(ctx):
    click.echo(json.dumps(load_config(ctx.obj["config_path"]), indent=2))


def main():
    cli(obj={})


if __name__ == "__main__":
    main()
