"""KeyedLock behaviour under threads."""

import threading
import time
from concurrent.futures import ThreadPoolExecutor

from opsauth.service.locks import KeyedLock


class TestKeyedLock:
    def test_entries_are_dropped_after_release(self):
        locks = KeyedLock()

        with locks.hold("user:1", "role:operator"):
            assert sorted(locks.held_keys()) == ["role:operator", "user:1"]

        assert list(locks.held_keys()) == []

    def test_same_key_is_exclusive(self):
        locks = KeyedLock()
        inside = []
        overlap = []

        def work(_):
            with locks.hold("user:1"):
                inside.append(1)
                if len(inside) > 1:
                    overlap.append(True)
                time.sleep(0.01)
                inside.pop()

        with ThreadPoolExecutor(max_workers=4) as pool:
            list(pool.map(work, range(8)))

        assert overlap == []

    def test_reversed_key_order_does_not_deadlock(self):
        locks = KeyedLock()
        done = []

        def forward():
            for _ in range(50):
                with locks.hold("a", "b"):
                    pass
            done.append("forward")

        def backward():
            for _ in range(50):
                with locks.hold("b", "a"):
                    pass
            done.append("backward")

        threads = [threading.Thread(target=forward), threading.Thread(target=backward)]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=5)

        assert sorted(done) == ["backward", "forward"]

    def test_release_on_error(self):
        locks = KeyedLock()

        try:
            with locks.hold("user:1"):
                raise ValueError("boom")
        except ValueError:
            pass

        with locks.hold("user:1"):
            assert list(locks.held_keys()) == ["user:1"]
