"""
Base models for the ledger database
"""

import enum
import uuid

from sqlalchemy.orm import declarative_base

Base = declarative_base()


class TradeSide(enum.Enum):
    BUY = "buy"
    SELL = "sell"

    @property
    def lot_sign(self) -> int:
        """Sign carried by the lot of a position opened in this direction"""
        return 1 if self is TradeSide.BUY else -1


class LinkStatus(enum.Enum):
    ACTIVE = "active"
    PAUSED = "paused"


def enum_values(enum_cls):
    # store enum values ("buy"), not member names ("BUY")
    return [member.value for member in enum_cls]


def generate_uuid() -> str:
    """Generate a UUID string for model IDs"""
    return str(uuid.uuid4())
