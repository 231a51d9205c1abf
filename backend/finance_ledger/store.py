from threading import RLock
from uuid import UUID


class InMemoryStore:
    def __init__(self) -> None:
        # Held for the whole of a unit of work.
        self.lock = RLock()
        self.users: dict[UUID, dict] = {}
        self.accounts: dict[UUID, dict] = {}
        self.categories: dict[UUID, dict] = {}
        self.transactions: dict[UUID, dict] = {}
