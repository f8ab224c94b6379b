import time
from contextlib import contextmanager
from typing import Dict
from typing import Iterator
from typing import List
from typing import Mapping


class Timer(Mapping[str, float]):
    """Accumulates wall-clock seconds spent in named phases.

    >>> timer = Timer()
    >>> with timer("allocate"):
    ...     pass
    >>> with timer("allocate"):
    ...     pass
    >>> timer.count("allocate")
    2
    >>> timer["allocate"] >= 0.0
    True
    """

    def __init__(self) -> None:
        self._times: Dict[str, List[float]] = {}

    @contextmanager
    def __call__(self, name: str) -> Iterator[None]:
        start = time.perf_counter()
        try:
            yield
        finally:
            end = time.perf_counter()
            self._times.setdefault(name, []).append(end - start)

    def __getitem__(self, name: str) -> float:
        return sum(self._times[name])

    def __iter__(self) -> Iterator[str]:
        return iter(self._times)

    def __len__(self) -> int:
        return len(self._times)

    def count(self, name: str) -> int:
        return len(self._times.get(name, []))

    def format(self) -> str:
        return ", ".join(f"{name}={self[name]:.2f}s ({self.count(name)}x)" for name in self)
