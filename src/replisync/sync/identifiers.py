"""Identifier assignment for new records"""

import uuid
from typing import Optional, Iterable

from ..storage.state import StateRepository


class IdGenerator:
    """
    Mints identifiers at mutation time.

    ``unique`` ids combine a replica-stable prefix with a persisted counter and
    cannot collide across replicas. ``sequential`` ids are the current numeric
    maximum plus one; two replicas adding while disconnected can mint the same
    id, which the merge keeps apart through the record origin.
    """

    UNIQUE = "unique"
    SEQUENTIAL = "sequential"

    def __init__(self, repository: StateRepository, scheme: str = UNIQUE,
                 prefix: Optional[str] = None):
        if scheme not in (self.UNIQUE, self.SEQUENTIAL):
            raise ValueError(f"Unknown id scheme: {scheme}")
        self.repository = repository
        self.scheme = scheme
        self.prefix = prefix or uuid.uuid4().hex[:8]

    async def next_id(self, existing: Iterable[str]) -> str:
        if self.scheme == self.SEQUENTIAL:
            numeric = [int(i) for i in existing if i.isdigit()]
            return str(max(numeric, default=0) + 1)

        counter = await self.repository.load_counter(self.prefix) + 1
        taken = set(existing)
        while f"{self.prefix}-{counter}" in taken:
            counter += 1
        await self.repository.save_counter(self.prefix, counter)
        return f"{self.prefix}-{counter}"
