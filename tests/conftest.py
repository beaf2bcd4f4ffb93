from __future__ import annotations

import random
import sys
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


class FakeClock:
    """Manually advanced millisecond clock."""

    def __init__(self, start: float = 1_000_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, ms: float) -> float:
        self.now += ms
        return self.now


class FixedRandom(random.Random):
    def __init__(self, value: float = 0.5) -> None:
        super().__init__(0)
        self.value = value

    def random(self) -> float:
        return self.value


class ManualScheduler:
    """Collects scheduled callbacks so tests decide when they fire."""

    def __init__(self) -> None:
        self.jobs = []

    def __call__(self, delay_ms, callback):
        job = _Job(delay_ms, callback)
        self.jobs.append(job)
        return job

    def fire_all(self) -> None:
        for job in list(self.jobs):
            job.fire()


class _Job:
    def __init__(self, delay_ms, callback) -> None:
        self.delay_ms = delay_ms
        self.callback = callback
        self.cancelled = False

    def cancel(self) -> None:
        self.cancelled = True

    def fire(self) -> None:
        self.callback()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def fixed_random() -> FixedRandom:
    return FixedRandom()


@pytest.fixture
def scheduler() -> ManualScheduler:
    return ManualScheduler()
