"""
Shared fixtures: a stand-in game server and a throwaway SQLite store.
"""

from typing import Any, Optional, Set

import pytest

from database.TrackerDatabase import TrackerDatabase


class FakeHost:
    """In-memory game server. Tests mutate roster/map directly."""

    def __init__(self, capacity: int = 12, map_name: Optional[str] = "de_dust2"):
        self.capacity = capacity
        self.map_name = map_name
        self.roster: Set[Any] = set()

    def current_capacity(self) -> int:
        return self.capacity

    def current_roster(self) -> Set[Any]:
        return set(self.roster)

    def current_context_name(self) -> Optional[str]:
        return self.map_name


class FrozenClock:
    """Settable clock returning UTC epoch seconds."""

    def __init__(self, now: float = 1_700_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


@pytest.fixture
def host():
    return FakeHost()


@pytest.fixture
def clock():
    return FrozenClock()


@pytest.fixture
def store(tmp_path):
    return TrackerDatabase(str(tmp_path / "slots.db"))
