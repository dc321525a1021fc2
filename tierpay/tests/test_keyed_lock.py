"""Per-user lock tests."""
import threading
import time

from tierpay.features.billing.locks import KeyedLock


def test_same_key_is_serialised():
    locks = KeyedLock()
    active = []
    overlap = []

    def worker():
        with locks.hold("user_alice"):
            active.append(1)
            if len(active) > 1:
                overlap.append(True)
            time.sleep(0.02)
            active.pop()

    threads = [threading.Thread(target=worker) for _ in range(4)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert overlap == []


def test_different_keys_do_not_block_each_other():
    locks = KeyedLock()
    inside = threading.Event()
    released = threading.Event()

    def holder():
        with locks.hold("user_alice"):
            inside.set()
            released.wait(timeout=2)

    t = threading.Thread(target=holder)
    t.start()
    inside.wait(timeout=2)

    acquired = threading.Event()

    def other():
        with locks.hold("user_bob"):
            acquired.set()

    t2 = threading.Thread(target=other)
    t2.start()
    assert acquired.wait(timeout=1)

    released.set()
    t.join()
    t2.join()


def test_entries_are_dropped_after_release():
    locks = KeyedLock()
    with locks.hold("a"):
        with locks.hold("b"):
            assert len(locks) == 2
    assert len(locks) == 0
