"""
Settlement module for applying quotes and trade actions to the position ledger
"""

from .engine import SettlementEngine
from .ledger import LedgerStore
from .subscriber import EventSubscriber

__all__ = ['SettlementEngine', 'LedgerStore', 'EventSubscriber']
