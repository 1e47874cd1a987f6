from .base import BaseExchange, Exchange, ExchangeBinding, ListingState
from .protocol import ProtocolExchange
from .sample import SampleExchange

__all__ = [
    "Exchange",
    "BaseExchange",
    "ExchangeBinding",
    "ListingState",
    "SampleExchange",
    "ProtocolExchange",
]
