"""
database/repositories.py
Repository interfaces and process-local implementations

Authenticator and the resource gateways only talk to the Repository
interface (get / add / update / query), so a real storage engine can be
substituted without touching them. The in-memory implementations keep
records for the process lifetime only.

Concurrency:
- Every repository guards its records with one re-entrant lock
- update() runs read-modify-write under that lock, so counters and
  append-only logs cannot lose concurrent writes
- Callers always receive copies; mutating a returned record never
  changes stored state
"""

import logging
import threading
from abc import ABC, abstractmethod
from typing import Callable, Dict, Generic, List, Optional, TypeVar

from pydantic import BaseModel

from database.models import Identity, Message, Document

logger = logging.getLogger(__name__)

T = TypeVar("T", bound=BaseModel)


class DuplicateRecordError(Exception):
    """Raised when adding a record whose key already exists"""
    pass


class RecordNotFoundError(Exception):
    """Raised when updating a record that does not exist"""
    pass


class Repository(ABC, Generic[T]):
    """CRUD + filtered query over one record type"""

    @abstractmethod
    def get(self, key: str) -> Optional[T]:
        """Return a copy of the record, or None"""

    @abstractmethod
    def add(self, record: T) -> T:
        """Insert a new record; raises DuplicateRecordError if the key exists"""

    @abstractmethod
    def update(self, key: str, mutator: Callable[[T], Optional[T]]) -> T:
        """
        Atomically apply mutator to the stored record

        The mutator receives a working copy and may modify it in place or
        return a replacement. Exceptions raised by the mutator abort the
        update and leave stored state untouched.
        """

    @abstractmethod
    def query(self, predicate: Optional[Callable[[T], bool]] = None) -> List[T]:
        """Return copies of all records matching predicate, in insertion order"""

    def count(self, predicate: Optional[Callable[[T], bool]] = None) -> int:
        return len(self.query(predicate))

    def exists(self, key: str) -> bool:
        return self.get(key) is not None


class InMemoryRepository(Repository[T]):
    """Dictionary-backed repository guarded by an RLock"""

    key_field = "id"

    def __init__(self):
        self._records: Dict[str, T] = {}
        self._lock = threading.RLock()

    def _key_of(self, record: T) -> str:
        return getattr(record, self.key_field)

    def get(self, key: str) -> Optional[T]:
        with self._lock:
            record = self._records.get(key)
            return record.model_copy(deep=True) if record is not None else None

    def add(self, record: T) -> T:
        key = self._key_of(record)
        with self._lock:
            if key in self._records:
                raise DuplicateRecordError(f"{type(record).__name__} {key} already exists")
            self._records[key] = record.model_copy(deep=True)
        logger.debug(f"Added {type(record).__name__} {key}")
        return record.model_copy(deep=True)

    def update(self, key: str, mutator: Callable[[T], Optional[T]]) -> T:
        with self._lock:
            current = self._records.get(key)
            if current is None:
                raise RecordNotFoundError(key)

            working = current.model_copy(deep=True)
            result = mutator(working)
            updated = result if result is not None else working

            if self._key_of(updated) != key:
                raise ValueError("Record key cannot change on update")

            self._records[key] = updated.model_copy(deep=True)
            return updated.model_copy(deep=True)

    def query(self, predicate: Optional[Callable[[T], bool]] = None) -> List[T]:
        with self._lock:
            return [
                record.model_copy(deep=True)
                for record in self._records.values()
                if predicate is None or predicate(record)
            ]

    def clear(self):
        """Drop all records"""
        with self._lock:
            self._records.clear()


class IdentityRepository(InMemoryRepository[Identity]):
    """Crew identities keyed by employee id"""
    key_field = "employee_id"


class MessageRepository(InMemoryRepository[Message]):
    """Messages keyed by id"""
    key_field = "id"


class DocumentRepository(InMemoryRepository[Document]):
    """Documents keyed by id"""
    key_field = "id"
