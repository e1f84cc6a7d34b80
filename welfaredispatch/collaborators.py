"""
External collaborators the engine reads from.

The check-in ledger records every wellness check-in; the engine only asks
it for the time of the last one.  The person directory is the care record's
view of who a person is and how to reach their family.  Both are external;
the in-memory versions here back the example and the tests.
"""

from __future__ import annotations

import threading
from datetime import datetime
from typing import Optional, Protocol

from welfaredispatch.errors import NotFound
from welfaredispatch.models import Person, ensure_utc


class CheckInLedger(Protocol):
    def last_check_in_at(self, person_id: str) -> Optional[datetime]: ...


class PersonDirectory(Protocol):
    def get(self, person_id: str) -> Person: ...


class InMemoryCheckInLedger:
    """Keeps only the latest check-in per person."""

    def __init__(self) -> None:
        self._latest: dict[str, datetime] = {}
        self._lock = threading.Lock()

    def record(self, person_id: str, at: datetime) -> None:
        at = ensure_utc(at)
        with self._lock:
            current = self._latest.get(person_id)
            if current is None or at > current:
                self._latest[person_id] = at

    def last_check_in_at(self, person_id: str) -> Optional[datetime]:
        with self._lock:
            return self._latest.get(person_id)


class InMemoryPersonDirectory:
    def __init__(self) -> None:
        self._people: dict[str, Person] = {}

    def add(self, person: Person) -> Person:
        self._people[person.person_id] = person.model_copy(deep=True)
        return person

    def get(self, person_id: str) -> Person:
        """Raises ``NotFound`` for an unknown person."""
        if person_id not in self._people:
            raise NotFound(f"Unknown person '{person_id}'", person_id=person_id)
        return self._people[person_id].model_copy(deep=True)

    def list_for_tenant(self, tenant_id: str) -> list[Person]:
        return [
            p.model_copy(deep=True)
            for p in self._people.values()
            if p.tenant_id == tenant_id
        ]
