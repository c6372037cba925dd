"""Real processes sharing one counter file."""
import os
import signal
import subprocess
import sys
import time
from pathlib import Path

import pytest

import slotctl as slotctl_module

pytestmark = pytest.mark.skipif(sys.platform == "win32", reason="POSIX signals")

ROOT = Path(__file__).resolve().parent.parent
PROBE = str(Path(__file__).resolve().parent / "overlap_probe.py")


def slotctl(tmp_path, *args, max_jobs=1):
    env = dict(os.environ, PYTHONPATH=str(ROOT))
    cmd = [sys.executable, "-m", "slotctl", "--quiet", "run",
           "--file", str(tmp_path / "sem"), "-n", str(max_jobs), "-r", "0.05", "--", *args]
    return subprocess.Popen(cmd, cwd=tmp_path, env=env)


def wait_for(predicate, timeout=15):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.02)
    return False


def read_counter(tmp_path):
    try:
        return (tmp_path / "sem").read_text().strip()
    except FileNotFoundError:
        return None


def peak(state):
    return int(state.read_text().split()[1])


@pytest.mark.parametrize("max_jobs,procs", [(1, 4), (2, 5)])
def test_overlap_never_exceeds_limit(tmp_path, max_jobs, procs):
    state = tmp_path / "probe"
    running = [slotctl(tmp_path, sys.executable, PROBE, str(state), "0.3", max_jobs=max_jobs)
               for _ in range(procs)]
    for p in running:
        assert p.wait(timeout=60) == 0
    assert peak(state) <= max_jobs
    assert state.read_text().split()[0] == "0"
    assert read_counter(tmp_path) == "0"


def test_waiter_proceeds_after_holder_exits(tmp_path):
    state = tmp_path / "probe"
    first = slotctl(tmp_path, sys.executable, PROBE, str(state), "0.5")
    assert wait_for(lambda: read_counter(tmp_path) == "1")
    second = slotctl(tmp_path, sys.executable, PROBE, str(state), "0.1")
    assert first.wait(timeout=30) == 0
    assert second.wait(timeout=30) == 0
    assert peak(state) == 1
    assert read_counter(tmp_path) == "0"


def test_sigterm_while_holding_releases_slot(tmp_path):
    holder = slotctl(tmp_path, sys.executable, "-c", "import time; time.sleep(30)")
    assert wait_for(lambda: read_counter(tmp_path) == "1")
    # give the workload a moment to start so the signal is forwarded to it
    time.sleep(0.3)
    holder.send_signal(signal.SIGTERM)
    assert holder.wait(timeout=15) == -signal.SIGTERM
    assert read_counter(tmp_path) == "0"


def test_sigint_while_polling_leaves_counter(tmp_path):
    (tmp_path / "sem").write_text("1")
    waiter = slotctl(tmp_path, sys.executable, "-c", "pass")
    # the lock file appears on the first attempt, after the guard is installed
    assert wait_for(lambda: (tmp_path / "sem.lock").exists())
    time.sleep(0.2)
    assert waiter.poll() is None
    waiter.send_signal(signal.SIGINT)
    assert waiter.wait(timeout=15) == -signal.SIGINT
    assert read_counter(tmp_path) == "1"


STUBBORN = """
import signal, sys, time
signal.signal(signal.SIGTERM, signal.SIG_IGN)
with open(sys.argv[1], "w") as f:
    f.write("started")
time.sleep(1.5)
with open(sys.argv[1], "w") as f:
    f.write("finished")
"""


def test_slot_is_held_until_a_stubborn_workload_exits(tmp_path):
    marker = tmp_path / "marker"
    holder = slotctl(tmp_path, sys.executable, "-c", STUBBORN, str(marker))
    assert wait_for(lambda: marker.exists() and marker.read_text() == "started")
    holder.send_signal(signal.SIGTERM)
    time.sleep(0.5)
    assert holder.poll() is None
    assert read_counter(tmp_path) == "1"
    assert holder.wait(timeout=15) == -signal.SIGTERM
    assert marker.read_text() == "finished"
    assert read_counter(tmp_path) == "0"


def test_waiter_does_not_start_while_stopping_workload_runs(tmp_path):
    marker = tmp_path / "marker"
    state = tmp_path / "probe"
    holder = slotctl(tmp_path, sys.executable, "-c", STUBBORN, str(marker))
    assert wait_for(lambda: marker.exists() and marker.read_text() == "started")
    waiter = slotctl(tmp_path, sys.executable, PROBE, str(state), "0.1")
    holder.send_signal(signal.SIGTERM)
    time.sleep(0.5)
    assert not state.exists()
    assert holder.wait(timeout=15) == -signal.SIGTERM
    assert waiter.wait(timeout=15) == 0
    assert peak(state) == 1


def test_forward_signal_sends_sigterm_and_waits():
    proc = subprocess.Popen([sys.executable, "-c", "import time; time.sleep(30)"])
    assert slotctl_module.forward_signal(proc, signal.SIGTERM) is True
    assert proc.returncode == -signal.SIGTERM


def test_forward_signal_leaves_sigint_to_the_process_group():
    # same group as us, so a terminal Ctrl+C would already have reached it
    proc = subprocess.Popen([sys.executable, "-c", "import time; time.sleep(0.3)"])
    assert slotctl_module.forward_signal(proc, signal.SIGINT) is False
    assert proc.returncode == 0


def test_forward_signal_sends_sigint_to_its_own_group():
    proc = subprocess.Popen([sys.executable, "-c", "import time; time.sleep(30)"], start_new_session=True)
    assert slotctl_module.forward_signal(proc, signal.SIGINT) is True
    assert proc.returncode != 0
