import logging
import os
from decimal import Decimal
from typing import Optional

from dotenv import load_dotenv
from pydantic import BaseModel, Field

load_dotenv()

LOG_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"


class Settings(BaseModel):
    """
    Runtime settings, read from environment variables (or a .env file).
    """
    database_url: Optional[str] = Field(None, description="MongoDB connection string")
    database_name: Optional[str] = Field(None, description="MongoDB database name")
    loan_days: int = Field(14, ge=1, description="Loan period in days")
    fine_per_day: Decimal = Field(Decimal("5000"), ge=0, description="Fine per whole overdue day")
    transactions: Optional[bool] = Field(None, description="None = detect from server topology")
    log_level: str = Field("INFO")
    metadata_url: str = Field("https://openlibrary.org")
    metadata_timeout: float = Field(10.0, gt=0)
    port: int = Field(8000)

    @classmethod
    def from_env(cls) -> "Settings":
        mode = os.getenv("LEDGER_TRANSACTIONS", "auto").lower()
        transactions = {"on": True, "off": False}.get(mode)
        return cls(
            database_url=os.getenv("DATABASE_URL"),
            database_name=os.getenv("DATABASE_NAME"),
            loan_days=int(os.getenv("LOAN_DAYS", 14)),
            fine_per_day=Decimal(os.getenv("FINE_PER_DAY", "5000")),
            transactions=transactions,
            log_level=os.getenv("LOG_LEVEL", "INFO"),
            metadata_url=os.getenv("METADATA_URL", "https://openlibrary.org"),
            metadata_timeout=float(os.getenv("METADATA_TIMEOUT", 10)),
            port=int(os.getenv("PORT", 8000)),
        )


def configure_logging(level: str = "INFO") -> logging.Logger:
    """Attach a single stream handler to the "library" logger tree."""
    logger = logging.getLogger("library")
    logger.setLevel(level.upper())

    if not logger.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        logger.addHandler(handler)
    return logger
