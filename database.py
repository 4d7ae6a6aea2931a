"""
MongoDB access and the transaction boundary for ledger writes.

All ledger mutations go through TransactionBoundary.transaction(). Only one
transaction holds the shared handle at a time. On deployments that support
multi-document transactions the block runs inside a client session;
elsewhere (standalone servers, mongomock) every write is journaled and
reverted on failure.
"""

import logging
import threading
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterator, List, Optional, Sequence, Tuple, Union

from pydantic import BaseModel
from pymongo import ASCENDING, MongoClient, ReturnDocument
from pymongo.client_session import ClientSession
from pymongo.database import Database
from pymongo.errors import PyMongoError

from errors import StorageError

logger = logging.getLogger("library.database")

BOOKS = "book"
MEMBERS = "member"
LEDGER = "ledger"
COUNTERS = "counters"

SortSpec = Sequence[Tuple[str, int]]


def connect(database_url: str, database_name: str) -> Tuple[MongoClient, Database]:
    client = MongoClient(database_url, tz_aware=False)
    return client, client[database_name]


def create_document(database: Database, collection_name: str, data: Union[BaseModel, dict]) -> str:
    """Insert a document stamped with created_at / updated_at and return its id."""
    if isinstance(data, BaseModel):
        data_dict = data.model_dump(mode="json")
    else:
        data_dict = data.copy()

    now = datetime.now(timezone.utc)
    data_dict["created_at"] = now
    data_dict["updated_at"] = now
    result = database[collection_name].insert_one(data_dict)
    return str(result.inserted_id)


def get_documents(
    database: Database,
    collection_name: str,
    filter_dict: Optional[dict] = None,
    sort: Optional[SortSpec] = None,
    limit: Optional[int] = None,
) -> List[dict]:
    cursor = database[collection_name].find(filter_dict or {})
    if sort:
        cursor = cursor.sort(list(sort))
    if limit:
        cursor = cursor.limit(limit)
    return list(cursor)


def ensure_indexes(database: Database) -> None:
    """Create the ledger indexes. The partial unique index allows one open record per book."""
    ledger = database[LEDGER]
    ledger.create_index(
        [("book_id", ASCENDING)],
        name="one_open_record_per_book",
        unique=True,
        partialFilterExpression={"is_returned": False},
    )
    ledger.create_index([("member_id", ASCENDING), ("is_returned", ASCENDING)], name="member_open_records")
    ledger.create_index([("is_returned", ASCENDING), ("due_at", ASCENDING)], name="open_by_due_date")
    database[BOOKS].create_index([("genre", ASCENDING)], name="book_genre")
    database[MEMBERS].create_index([("category", ASCENDING)], name="member_category")


def server_supports_transactions(client: MongoClient) -> bool:
    """Transactions need a replica set member or a mongos router."""
    try:
        hello = client.admin.command("hello")
    except PyMongoError as exc:
        logger.warning("Could not inspect server topology: %s", exc)
        return False
    return bool(hello.get("setName")) or hello.get("msg") == "isdbgrid"


class Session:
    """
    Collection operations bound to one unit of work.

    With a pymongo ClientSession every call is part of that server-side
    transaction. Without one, inverse operations are journaled so revert()
    can undo what was written.
    """

    def __init__(self, database: Database, client_session: Optional[ClientSession] = None, journaled: bool = False):
        self.db = database
        self.client_session = client_session
        self.journaled = journaled
        self._undo: List[Callable[[], Any]] = []

    def _kwargs(self) -> Dict[str, Any]:
        return {"session": self.client_session} if self.client_session is not None else {}

    def find_one(self, collection: str, filter_dict: dict) -> Optional[dict]:
        return self.db[collection].find_one(filter_dict, **self._kwargs())

    def find(self, collection: str, filter_dict: dict, sort: Optional[SortSpec] = None) -> List[dict]:
        cursor = self.db[collection].find(filter_dict, **self._kwargs())
        if sort:
            cursor = cursor.sort(list(sort))
        return list(cursor)

    def count(self, collection: str, filter_dict: dict) -> int:
        return self.db[collection].count_documents(filter_dict, **self._kwargs())

    def insert(self, collection: str, document: dict) -> Any:
        coll = self.db[collection]
        inserted_id = coll.insert_one(document, **self._kwargs()).inserted_id
        if self.journaled:
            self._undo.append(lambda: coll.delete_one({"_id": inserted_id}))
        return inserted_id

    def update(self, collection: str, filter_dict: dict, changes: dict) -> bool:
        """$set changes on the first match; returns False when nothing matched."""
        coll = self.db[collection]
        before = coll.find_one(filter_dict, **self._kwargs()) if self.journaled else None
        result = coll.update_one(filter_dict, {"$set": changes}, **self._kwargs())
        if before is not None and result.matched_count:
            self._undo.append(lambda: coll.replace_one({"_id": before["_id"]}, before))
        return result.matched_count > 0

    def delete(self, collection: str, filter_dict: dict) -> bool:
        coll = self.db[collection]
        before = coll.find_one(filter_dict, **self._kwargs()) if self.journaled else None
        result = coll.delete_one(filter_dict, **self._kwargs())
        if before is not None and result.deleted_count:
            self._undo.append(lambda: coll.insert_one(before))
        return result.deleted_count > 0

    def next_sequence(self, name: str) -> int:
        # Not journaled: a rolled-back insert leaves a gap, ids are never reused.
        doc = self.db[COUNTERS].find_one_and_update(
            {"_id": name},
            {"$inc": {"seq": 1}},
            upsert=True,
            return_document=ReturnDocument.AFTER,
            **self._kwargs(),
        )
        return int(doc["seq"])

    def revert(self) -> None:
        while self._undo:
            self._undo.pop()()


class TransactionBoundary:
    """Owns the shared database handle and runs ledger writes atomically."""

    def __init__(self, client: MongoClient, database_name: str, use_transactions: Optional[bool] = None):
        self.client = client
        self.db = client[database_name]
        self._use_transactions = use_transactions
        self._lock = threading.RLock()

    @property
    def uses_transactions(self) -> bool:
        if self._use_transactions is None:
            self._use_transactions = server_supports_transactions(self.client)
            logger.info("Multi-document transactions %s", "enabled" if self._use_transactions else "unavailable, journaling writes")
        return self._use_transactions

    @contextmanager
    def reader(self) -> Iterator[Session]:
        """
        A non-journaled session for reads and single-document writes.

        Holds the same lock as transaction(), so a reader never observes a
        borrow or return that is half written or later reverted.
        """
        with self._lock:
            yield Session(self.db)

    @contextmanager
    def transaction(self) -> Iterator[Session]:
        with self._lock:
            try:
                if self.uses_transactions:
                    with self.client.start_session() as client_session:
                        with client_session.start_transaction():
                            yield Session(self.db, client_session)
                else:
                    session = Session(self.db, journaled=True)
                    try:
                        yield session
                    except Exception:
                        logger.info("Reverting %d journaled write(s)", len(session._undo))
                        session.revert()
                        raise
            except PyMongoError as exc:
                logger.error("Transaction rolled back: %s", exc)
                raise StorageError(f"Storage failure, transaction rolled back: {exc}") from exc
