"""
Computation of the value attached to fee-bearing transactions.

Fees are read live from the contract every time; nothing here is cached, so
an admin fee change or a price/discount/stock change between quoting and
submitting is detected as ``StaleQuote`` instead of being silently resubmitted.
"""

import logging
from enum import Enum
from typing import Optional, Union

from medchain.amounts import format_amount, purchase_total, to_decimal_string
from medchain.errors import InvalidQuantity, StaleQuote, UnknownRecord
from medchain.gateway import LedgerReadGateway
from medchain.ledger import Functions
from medchain.models import MedicineRecord, Quote

logger = logging.getLogger(__name__)


class FeeKind(str, Enum):
    DOCTOR_REGISTRATION = "doctor_registration"
    PATIENT_REGISTRATION = "patient_registration"
    APPOINTMENT = "appointment"
    PURCHASE = "purchase"


FEE_GETTERS = {
    FeeKind.DOCTOR_REGISTRATION: Functions.DOCTOR_FEE,
    FeeKind.PATIENT_REGISTRATION: Functions.PATIENT_FEE,
    FeeKind.APPOINTMENT: Functions.APPOINTMENT_FEE,
}


def validate_quantity(quantity) -> int:
    if not isinstance(quantity, int) or isinstance(quantity, bool) or quantity <= 0:
        raise InvalidQuantity(detail=f"requested quantity {quantity!r}")
    return quantity


def purchase_amount(medicine: MedicineRecord, quantity: int) -> int:
    """quantity x discounted unit price, in wei"""
    return purchase_total(medicine.price_wei, medicine.discount_percent, validate_quantity(quantity))


class FeeCalculator:
    def __init__(self, gateway: LedgerReadGateway):
        self.gateway = gateway

    async def required_fee(self, kind: FeeKind, medicine_id: Optional[int] = None,
                           quantity: Optional[int] = None) -> int:
        """
        Amount in wei that must be attached for a fee-bearing call.

        Args:
            kind: Which fee
            medicine_id: Medicine to buy (PURCHASE only)
            quantity: Units to buy (PURCHASE only)

        Returns:
            int: The live amount in wei
        """
        kind = FeeKind(kind)
        if kind is FeeKind.PURCHASE:
            validate_quantity(quantity)
            medicine = await self.gateway.fetch_one("medicine", medicine_id)
            if medicine is None:
                raise UnknownRecord(f"Medicine #{medicine_id} does not exist.")
            return purchase_amount(medicine, quantity)
        return await self.gateway.fetch_value(FEE_GETTERS[kind])

    async def quote(self, kind: FeeKind, medicine_id: Optional[int] = None,
                    quantity: Optional[int] = None) -> Quote:
        """Amount to show the user before they confirm."""
        amount = await self.required_fee(kind, medicine_id=medicine_id, quantity=quantity)
        params = {"medicine_id": medicine_id, "quantity": quantity} if FeeKind(kind) is FeeKind.PURCHASE else {}
        return Quote(
            kind=FeeKind(kind).value,
            amount_wei=amount,
            amount=to_decimal_string(amount),
            display=format_amount(amount),
            params=params,
        )

    @staticmethod
    def check_quote(expected: Union[Quote, int, None], actual: int) -> int:
        """Raise StaleQuote when the amount shown differs from the amount now required."""
        if expected is None:
            return actual
        expected_wei = expected.amount_wei if isinstance(expected, Quote) else expected
        if expected_wei != actual:
            logger.warning(f"Stale quote: shown {expected_wei} wei, now {actual} wei")
            raise StaleQuote(expected_wei, actual)
        return actual

    async def confirm(self, kind: FeeKind, expected: Union[Quote, int, None],
                      medicine_id: Optional[int] = None, quantity: Optional[int] = None) -> int:
        """Recompute the fee right before submission and compare with what the user saw."""
        actual = await self.required_fee(kind, medicine_id=medicine_id, quantity=quantity)
        return self.check_quote(expected, actual)
