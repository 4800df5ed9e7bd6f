import threading

from savingsplan.app.services.locks import KeyedLocks


def _acquire_in_thread(locks, key):
    """Start a thread that takes `key`; returns the event it sets once inside"""
    entered = threading.Event()

    def contender():
        with locks.hold(key):
            entered.set()

    thread = threading.Thread(target=contender, daemon=True)
    thread.start()
    return entered, thread


def test_same_key_is_exclusive():
    locks = KeyedLocks()
    with locks.hold("2025-03"):
        entered, thread = _acquire_in_thread(locks, "2025-03")
        assert not entered.wait(timeout=0.2)

    assert entered.wait(timeout=5)
    thread.join(timeout=5)

def test_different_keys_do_not_block():
    locks = KeyedLocks()
    with locks.hold("2025-03"):
        entered, thread = _acquire_in_thread(locks, "2025-04")
        assert entered.wait(timeout=5)
    thread.join(timeout=5)

def test_tuple_keys_are_independent():
    locks = KeyedLocks()
    with locks.hold(("asset-1", "goal-1")):
        entered, _ = _acquire_in_thread(locks, ("asset-1", "goal-2"))
        assert entered.wait(timeout=5)

def test_reentrant_in_the_holding_thread():
    locks = KeyedLocks()
    with locks.hold("2025-03"):
        with locks.hold("2025-03"):
            inner = True
    assert inner
