import time
from typing import Dict, Optional, Protocol

PIPELINE_PHASES = ("scout", "editor", "specialist", "reviewer", "fixer")


class Clock(Protocol):
    def now(self) -> float:
        """Seconds on a monotonic scale."""
        ...


class SystemClock:
    def now(self) -> float:
        return time.monotonic()


class ManualClock:
    """Deterministic clock for tests. Each now() call advances by `auto_advance`."""

    def __init__(self, start: float = 0.0, auto_advance: float = 0.0):
        self._current = start
        self._auto_advance = auto_advance

    def now(self) -> float:
        value = self._current
        self._current += self._auto_advance
        return value

    def advance(self, seconds: float) -> None:
        self._current += seconds


class PhaseTimer:
    """Records wall-clock duration per pipeline phase."""

    def __init__(self, clock: Optional[Clock] = None):
        self._clock = clock or SystemClock()
        self._starts: Dict[str, float] = {}
        self._durations: Dict[str, float] = {}

    def start(self, phase: str) -> None:
        self._starts[phase] = self._clock.now()

    def end(self, phase: str) -> float:
        started = self._starts.pop(phase, None)
        duration = self._clock.now() - started if started is not None else 0.0
        self._durations[phase] = duration
        return duration

    def duration(self, phase: str) -> float:
        return self._durations.get(phase, 0.0)

    def durations(self) -> Dict[str, float]:
        result = {phase: self.duration(phase) for phase in PIPELINE_PHASES}
        for phase, value in self._durations.items():
            result.setdefault(phase, value)
        return result

    def total(self) -> float:
        return sum(self._durations.values())

    def is_running(self, phase: str) -> bool:
        return phase in self._starts

    def is_completed(self, phase: str) -> bool:
        return phase in self._durations

    def reset(self) -> None:
        self._starts.clear()
        self._durations.clear()
