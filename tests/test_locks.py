import threading

import pytest

from fleet.locks import KeyedLocks


def test_lock_is_dropped_once_released():
    locks = KeyedLocks()
    with locks.hold("amb-1"):
        assert len(locks) == 1
        with locks.hold("amb-1"):
            assert len(locks) == 1
        assert len(locks) == 1
    assert len(locks) == 0


def test_waiter_gets_the_lock_then_it_is_dropped():
    locks = KeyedLocks()
    entered = threading.Event()

    def contend():
        with locks.hold("trip-1"):
            entered.set()

    with locks.hold("trip-1"):
        worker = threading.Thread(target=contend)
        worker.start()
        assert not entered.wait(0.05)
    worker.join(1.0)

    assert entered.is_set()
    assert len(locks) == 0


def test_lock_is_dropped_after_error():
    locks = KeyedLocks()
    with pytest.raises(RuntimeError):
        with locks.hold("amb-1"):
            raise RuntimeError("boom")
    assert len(locks) == 0
