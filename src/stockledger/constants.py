"""Enumerations shared across the stockledger modules.

Centralises domain constants so that the data access layer (DAL), business
logic layer (BLL), and the command-line front-end rely on a single source of
truth for stored status and kind identifiers.
"""

from __future__ import annotations

from decimal import Decimal
from enum import Enum


# Central schema version expected by all layers when validating the store.
EXPECTED_SCHEMA_VERSION = "1.0.0"

# Installment amounts are kept with two decimal places of minor units.
INSTALLMENT_QUANTUM = Decimal("0.01")


class MovementType(str, Enum):
    """Enumerate the kinds of rows recorded in the stock ledger."""

    STOCK_IN = "stock_in"
    SALE = "sale"
    RETURN = "return"
    ADJUSTMENT = "adjustment"


class SaleStatus(str, Enum):
    """Enumerate the aggregate states of a sale."""

    PENDING = "pending"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class InstallmentStatus(str, Enum):
    """Enumerate the payment states of a single installment."""

    PENDING = "pending"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class PaymentMethod(str, Enum):
    """Enumerate supported payment mechanisms for sales."""

    CASH = "cash"
    CREDIT_CARD = "credit_card"
    DEBIT_CARD = "debit_card"
    PIX = "pix"
    BANK_TRANSFER = "bank_transfer"
    INSTALLMENT = "installment"


# Direction applied to a ledger quantity for each movement kind. Adjustments
# are inbound unless the caller flags them as outbound.
MOVEMENT_SIGNS = {
    MovementType.STOCK_IN: 1,
    MovementType.SALE: -1,
    MovementType.RETURN: 1,
    MovementType.ADJUSTMENT: 1,
}


__all__ = [
    "EXPECTED_SCHEMA_VERSION",
    "INSTALLMENT_QUANTUM",
    "MovementType",
    "SaleStatus",
    "InstallmentStatus",
    "PaymentMethod",
    "MOVEMENT_SIGNS",
]
