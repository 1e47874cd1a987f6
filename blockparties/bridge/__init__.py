"""Order-matching bridge: order descriptors and the settlement capability exchanges depend on."""

from .matcher import (
    DryRunBridge,
    OrderMatchingBridge,
    ReplayProtectedBridge,
    SettlementResult,
    SettlementStatus,
)
from .orders import (
    NULL_ADDRESS,
    FeeMethod,
    HowToCall,
    Order,
    SaleKind,
    Side,
    Signature,
    calculate_match_price,
    orders_can_match,
    validate_order_parameters,
)

__all__ = [
    "NULL_ADDRESS",
    "Order",
    "Side",
    "SaleKind",
    "HowToCall",
    "FeeMethod",
    "Signature",
    "orders_can_match",
    "calculate_match_price",
    "validate_order_parameters",
    "OrderMatchingBridge",
    "SettlementResult",
    "SettlementStatus",
    "DryRunBridge",
    "ReplayProtectedBridge",
]
