import logging
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Callable, Optional

from pymongo import MongoClient

import database
from catalog import CatalogStore
from config import Settings
from database import TransactionBoundary
from ledger import DEFAULT_FINE_PER_DAY, DEFAULT_LOAN_DAYS, LedgerEngine, utc_now
from members import MemberDirectory
from metadata import OpenLibraryLookup

logger = logging.getLogger("library")


@dataclass
class Library:
    """Everything a caller needs, wired around one shared database handle."""
    boundary: TransactionBoundary
    catalog: CatalogStore
    members: MemberDirectory
    ledger: LedgerEngine
    metadata: OpenLibraryLookup

    @property
    def db(self):
        return self.boundary.db

    @classmethod
    def from_client(
        cls,
        client: MongoClient,
        database_name: str,
        use_transactions: Optional[bool] = None,
        loan_days: int = DEFAULT_LOAN_DAYS,
        fine_per_day: Decimal = DEFAULT_FINE_PER_DAY,
        clock: Callable[[], datetime] = utc_now,
        metadata: Optional[OpenLibraryLookup] = None,
    ) -> "Library":
        boundary = TransactionBoundary(client, database_name, use_transactions)
        catalog = CatalogStore(boundary)
        members = MemberDirectory(boundary)
        ledger = LedgerEngine(boundary, catalog, members, loan_days=loan_days, fine_per_day=fine_per_day, clock=clock)
        return cls(boundary, catalog, members, ledger, metadata or OpenLibraryLookup())

    @classmethod
    def from_settings(cls, settings: Settings) -> "Library":
        if not (settings.database_url and settings.database_name):
            raise RuntimeError("Database not available. Check DATABASE_URL and DATABASE_NAME environment variables.")
        client, db = database.connect(settings.database_url, settings.database_name)
        database.ensure_indexes(db)
        logger.info("Connected to database %s", settings.database_name)
        return cls.from_client(
            client,
            settings.database_name,
            use_transactions=settings.transactions,
            loan_days=settings.loan_days,
            fine_per_day=settings.fine_per_day,
            metadata=OpenLibraryLookup(settings.metadata_url, settings.metadata_timeout),
        )
