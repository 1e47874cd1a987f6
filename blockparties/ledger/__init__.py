from .ledger import Ledger
from .models import GIGA, Party
from .repository import InMemoryPartyRepository, PartyRepository, PostgresPartyRepository
from .transfers import InMemoryWallet, ValueTransfer

__all__ = [
    "GIGA",
    "Ledger",
    "Party",
    "PartyRepository",
    "InMemoryPartyRepository",
    "PostgresPartyRepository",
    "ValueTransfer",
    "InMemoryWallet",
]
