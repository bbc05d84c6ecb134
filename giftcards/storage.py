"""
Whole-collection stores for companies and ledger transactions.

Each store persists one collection as a unit: readers get the full list and
writers replace it. ``update`` holds the store lock across read, mutate and
write, so concurrent writers in one process never lose each other's changes.
"""

import logging
import os
import tempfile
import threading
from abc import ABC, abstractmethod
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Generic, Iterable, Iterator, Optional, TypeVar, Union

from pydantic import BaseModel, TypeAdapter, ValidationError

from .config import Settings
from .exceptions import StorageError
from .models import Company, Transaction, TransactionType

logger = logging.getLogger(__name__)

T = TypeVar("T", bound=BaseModel)
R = TypeVar("R")

COMPENSATION_TYPES = (TransactionType.SETTLEMENT, TransactionType.CANCELATION)


class CollectionStore(ABC, Generic[T]):
    def __init__(self) -> None:
        self._lock = threading.RLock()

    @abstractmethod
    def load_all(self) -> list[T]:
        ...

    @abstractmethod
    def save_all(self, items: list[T]) -> None:
        """Replace the stored collection. Raises StorageError on failure."""
        ...

    def update(self, mutator: Callable[[list[T]], R]) -> R:
        """Apply ``mutator`` to the current collection and persist the result.

        Nothing is written when the mutator raises.
        """
        with self._lock:
            items = self.load_all()
            result = mutator(items)
            self.save_all(items)
            return result


class InMemoryStore(CollectionStore[T]):
    def __init__(self, items: Iterable[T] = ()) -> None:
        super().__init__()
        self._items: list[T] = [item.model_copy(deep=True) for item in items]

    def load_all(self) -> list[T]:
        with self._lock:
            return [item.model_copy(deep=True) for item in self._items]

    def save_all(self, items: list[T]) -> None:
        with self._lock:
            self._items = [item.model_copy(deep=True) for item in items]


class JsonFileStore(CollectionStore[T]):
    """A JSON array in a single file. A missing file reads as empty."""

    def __init__(self, path: Union[str, Path], model: type[T]) -> None:
        super().__init__()
        self.path = Path(path)
        self._adapter = TypeAdapter(list[model])

    def load_all(self) -> list[T]:
        try:
            raw = self.path.read_bytes()
        except FileNotFoundError:
            return []
        except OSError as e:
            logger.error("Error reading %s: %s", self.path, e)
            raise StorageError(f"Error reading {self.path.name}") from e

        if not raw.strip():
            return []
        try:
            return self._adapter.validate_json(raw)
        except ValidationError as e:
            logger.error("Corrupt data in %s: %s", self.path, e)
            raise StorageError(f"Corrupt data in {self.path.name}") from e

    def save_all(self, items: list[T]) -> None:
        data = self._adapter.dump_json(items, by_alias=True, exclude_none=True, indent=2)
        tmp_path = None
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_path = tempfile.mkstemp(dir=self.path.parent, prefix=f".{self.path.name}.", suffix=".tmp")
            with os.fdopen(fd, "wb") as fh:
                fh.write(data)
            os.replace(tmp_path, self.path)
        except OSError as e:
            logger.error("Error saving %s: %s", self.path, e)
            if tmp_path and os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise StorageError(f"Error saving {self.path.name}") from e


class TransactionStore:
    """Append-only view over the ledger collection."""

    def __init__(self, backend: CollectionStore[Transaction]) -> None:
        self.backend = backend

    def load_all(self) -> list[Transaction]:
        return self.backend.load_all()

    def append(self, transaction: Transaction) -> Transaction:
        self.append_many([transaction])
        return transaction

    def append_many(self, transactions: list[Transaction]) -> None:
        """Append all ``transactions`` in order with a single write."""
        self.backend.update(lambda items: items.extend(transactions))

    def get(self, transaction_id: str) -> Optional[Transaction]:
        for transaction in self.backend.load_all():
            if transaction.id == transaction_id:
                return transaction
        return None

    def for_company(self, company_id: str) -> list[Transaction]:
        entries = [t for t in reversed(self.backend.load_all()) if t.company_id == company_id]
        # stable sort: entries sharing a timestamp stay newest-appended first
        entries.sort(key=lambda t: t.date, reverse=True)
        return entries

    def compensations_of(self, original_id: str) -> list[Transaction]:
        """Successful settlements and cancellations recorded against ``original_id``."""
        return [
            t for t in self.backend.load_all()
            if t.original_transaction_id == original_id
            and t.type in COMPENSATION_TYPES
            and t.succeeded
        ]


@dataclass
class Storage:
    companies: CollectionStore[Company]
    transactions: TransactionStore

    @classmethod
    def in_memory(
        cls,
        companies: Iterable[Company] = (),
        transactions: Iterable[Transaction] = (),
    ) -> "Storage":
        return cls(
            companies=InMemoryStore(companies),
            transactions=TransactionStore(InMemoryStore(transactions)),
        )


def build_storage(settings: Settings) -> Storage:
    if settings.storage_backend == "memory":
        logger.info("Using in-memory storage")
        return Storage.in_memory()

    logger.info("Using JSON storage in %s", settings.data_dir)
    return Storage(
        companies=JsonFileStore(settings.companies_path, Company),
        transactions=TransactionStore(JsonFileStore(settings.transactions_path, Transaction)),
    )


class CompanyLocks:
    """One lock per company id.

    Held across a balance change and its ledger append so both stores move
    together for any single company. An entry lives only while some thread
    holds or waits on it.
    """

    def __init__(self) -> None:
        self._locks: dict = {}
        self._guard = threading.Lock()

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)

    @contextmanager
    def hold(self, company_id: str) -> Iterator[None]:
        with self._guard:
            entry = self._locks.setdefault(company_id, [threading.RLock(), 0])
            entry[1] += 1
        try:
            with entry[0]:
                yield
        finally:
            with self._guard:
                entry[1] -= 1
                if entry[1] == 0:
                    del self._locks[company_id]
