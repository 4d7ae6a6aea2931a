"""Member Directory: limited and staff members keyed by identifier."""

import logging
import re
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from pymongo.errors import DuplicateKeyError

import database
from database import LEDGER, MEMBERS, Session, TransactionBoundary
from errors import FailureReason, NotFound, PreconditionFailed
from schemas import Member, MemberCategory

logger = logging.getLogger("library.members")

BY_NAME = [("name", 1)]


def to_member(doc: Optional[Dict[str, Any]]) -> Optional[Member]:
    if not doc:
        return None
    data = dict(doc)
    data["identifier"] = data.pop("_id")
    return Member(**data)


def _to_document(member: Member) -> Dict[str, Any]:
    data = member.model_dump(mode="json", exclude={"borrow_limit"})
    data["_id"] = data.pop("identifier")
    return data


class MemberDirectory:
    def __init__(self, boundary: TransactionBoundary):
        self.boundary = boundary
        self.db = boundary.db

    def _members(self, query: Optional[dict] = None) -> List[Member]:
        with self.boundary.reader():
            docs = database.get_documents(self.db, MEMBERS, query, sort=BY_NAME)
        return [to_member(d) for d in docs]

    def find_by_identifier(self, identifier: str, session: Optional[Session] = None) -> Optional[Member]:
        if session is not None:
            return to_member(session.find_one(MEMBERS, {"_id": identifier}))
        with self.boundary.reader() as reader:
            return to_member(reader.find_one(MEMBERS, {"_id": identifier}))

    def get(self, identifier: str, session: Optional[Session] = None) -> Member:
        member = self.find_by_identifier(identifier, session)
        if member is None:
            raise NotFound(f"Member not found: {identifier}", FailureReason.MEMBER_NOT_FOUND)
        return member

    def list_members(self) -> List[Member]:
        return self._members()

    def search(self, term: str) -> List[Member]:
        if not term:
            return self.list_members()
        pattern = {"$regex": re.escape(term), "$options": "i"}
        return self._members({"$or": [{"name": pattern}, {"_id": pattern}]})

    def find_by_category(self, category: MemberCategory) -> List[Member]:
        return self._members({"category": MemberCategory(category).value})

    def active_members(self) -> List[Member]:
        return self._members({"is_active": True})

    def count_by_category(self, category: MemberCategory) -> int:
        """Active members of a category."""
        with self.boundary.reader() as reader:
            return reader.count(MEMBERS, {"category": MemberCategory(category).value, "is_active": True})

    def create(self, member: Member) -> Member:
        logger.info("create member | identifier=%s category=%s", member.identifier, member.category.value)
        try:
            with self.boundary.reader():
                database.create_document(self.db, MEMBERS, _to_document(member))
        except DuplicateKeyError:
            raise PreconditionFailed(f"Member already exists: {member.identifier}", FailureReason.DUPLICATE_MEMBER)
        return self.get(member.identifier)

    def update(self, identifier: str, changes: Dict[str, Any]) -> Member:
        """
        Apply field changes to a member.

        A category change is refused while the member holds more open
        records than the new category allows.
        """
        changes = {k: v for k, v in changes.items() if k not in ("identifier", "borrow_limit", "_id")}
        with self.boundary.transaction() as session:
            current = self.get(identifier, session)
            merged = Member(**current.model_copy(update=changes).model_dump(exclude={"borrow_limit"}))
            if merged.category != current.category:
                open_count = session.count(LEDGER, {"member_id": identifier, "is_returned": False})
                if open_count > merged.borrow_limit:
                    logger.warning("refused | reason=%s | member_id=%s open=%s limit=%s",
                                   FailureReason.LIMIT_REACHED.value, identifier, open_count, merged.borrow_limit)
                    raise PreconditionFailed(
                        f"Member {identifier} holds {open_count} books, above the "
                        f"{merged.category.value} limit of {merged.borrow_limit}",
                        FailureReason.LIMIT_REACHED,
                    )
            update = {k: v for k, v in _to_document(merged).items() if k in changes}
            if update:
                update["updated_at"] = datetime.now(timezone.utc)
                session.update(MEMBERS, {"_id": identifier}, update)
                logger.info("update member | identifier=%s fields=%s", identifier, sorted(changes))
        return self.get(identifier)

    def set_active(self, identifier: str, active: bool) -> Member:
        with self.boundary.transaction() as session:
            self.get(identifier, session)
            session.update(MEMBERS, {"_id": identifier}, {"is_active": active, "updated_at": datetime.now(timezone.utc)})
        logger.info("set member active | identifier=%s active=%s", identifier, active)
        return self.get(identifier)

    def delete(self, identifier: str) -> None:
        with self.boundary.transaction() as session:
            self.get(identifier, session)
            if session.count(LEDGER, {"member_id": identifier, "is_returned": False}):
                raise PreconditionFailed(f"Member has active loans: {identifier}", FailureReason.MEMBER_HAS_LOANS)
            session.delete(MEMBERS, {"_id": identifier})
        logger.info("delete member | identifier=%s", identifier)
