"""Thread-safe named counters for pipeline statistics."""
import threading


class Counters:
    """A fixed set of integer counters sharing one lock."""

    def __init__(self, *names):
        self._lock = threading.Lock()
        self._values = dict.fromkeys(names, 0)

    def incr(self, name, amount=1):
        with self._lock:
            self._values[name] = self._values.get(name, 0) + amount

    def get(self, name):
        with self._lock:
            return self._values.get(name, 0)

    def to_dict(self):
        with self._lock:
            return dict(self._values)

    def __getitem__(self, name):
        return self.get(name)
