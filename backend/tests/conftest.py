from __future__ import annotations

import pytest

from tally.domain import CreateEventRequest
from tally.store import InMemoryStore
from tally.tally import TallyEngine


@pytest.fixture
def store() -> InMemoryStore:
    return InMemoryStore.create()


@pytest.fixture
def engine(store: InMemoryStore) -> TallyEngine:
    return TallyEngine(store=store)


@pytest.fixture
def make_event(store: InMemoryStore):
    def _make(rounds, contestants=("C1", "C2", "C3"), event_type="criteria", inactive=()):
        req = CreateEventRequest(
            name="Search for Ms. Campus",
            event_type=event_type,
            rounds=rounds,
            contestants=[
                {
                    "code": code,
                    "name": f"Contestant {code}",
                    "organization": f"Org {code}",
                    "is_active": code not in inactive,
                }
                for code in contestants
            ],
        )
        return store.create_event(req)

    return _make
