import signal

import pytest

import slotctl


@pytest.fixture
def store(tmp_path):
    return slotctl.SemaphoreStore(tmp_path / "locks" / "semaphore.lock")


@pytest.fixture
def counter(store):
    """Read the raw counter file, or None when it does not exist."""
    def read():
        if not store.path.exists():
            return None
        return store.path.read_text().strip()
    return read


@pytest.fixture(autouse=True)
def keep_signal_handlers():
    saved = {s: signal.getsignal(s) for s in slotctl.GUARDED_SIGNALS}
    yield
    for s, handler in saved.items():
        signal.signal(s, handler)
