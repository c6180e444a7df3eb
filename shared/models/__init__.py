"""
Ledger models: accounts, positions and eligible-account links
"""

from shared.models.base import Base, LinkStatus, TradeSide, generate_uuid
from shared.models.account import Account
from shared.models.position import Position
from shared.models.subscription import EligibleAccountLink

__all__ = [
    'Base',
    'LinkStatus',
    'TradeSide',
    'generate_uuid',
    'Account',
    'Position',
    'EligibleAccountLink',
]
