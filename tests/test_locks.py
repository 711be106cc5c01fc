import threading
import time

from locks import KeyedLock


def test_same_key_is_serialized():
    locks = KeyedLock()
    active = []
    overlaps = []

    def work():
        with locks.hold(("budget", 1)):
            active.append(1)
            if len(active) > 1:
                overlaps.append(True)
            time.sleep(0.01)
            active.pop()

    threads = [threading.Thread(target=work) for _ in range(5)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert overlaps == []
    assert len(locks) == 0


def test_different_keys_do_not_block_each_other():
    locks = KeyedLock()
    entered = threading.Event()

    def other():
        with locks.hold(("budget", 2)):
            entered.set()

    with locks.hold(("budget", 1)):
        t = threading.Thread(target=other)
        t.start()
        assert entered.wait(timeout=1)
        t.join()


def test_lock_is_reentrant_and_released():
    locks = KeyedLock()
    with locks.hold(("template", 1)):
        with locks.hold(("template", 1)):
            assert len(locks) == 1
    assert len(locks) == 0
