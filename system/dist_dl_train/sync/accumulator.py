import threading


class MaxAccumulator:
    """Thread-safe running maximum shared by concurrent tasks."""

    def __init__(self, initial: float = float('-inf')):
        self._value = float(initial)
        self.lock = threading.Lock()

    def add(self, value: float) -> None:
        with self.lock:
            if value > self._value:
                self._value = float(value)

    def merge(self, other: 'MaxAccumulator') -> None:
        self.add(other.value)

    @property
    def value(self) -> float:
        with self.lock:
            return self._value

    def __repr__(self) -> str:
        return f"MaxAccumulator(value={self.value})"
