"""
Tier catalogue models.

A tier (e.g. "pro") carries one price per billing cycle. The catalogue is
maintained elsewhere; tierpay only reads it.
"""

from decimal import Decimal
from typing import Dict, Optional
from pydantic import BaseModel, ConfigDict

from tierpay.models.billing import BillingCycle


class TierPrice(BaseModel):
    model_config = ConfigDict(frozen=True)

    price: Decimal  # major currency units
    duration_in_days: int
    plan_code: str  # provider-side plan / price identifier

    @property
    def price_minor_units(self) -> int:
        return int((self.price * 100).to_integral_value())


class TierDefinition(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    billing_cycles: Dict[BillingCycle, TierPrice]
    description: Optional[str] = None

    def price_for(self, billing_cycle: BillingCycle | str) -> Optional[TierPrice]:
        try:
            cycle = BillingCycle(billing_cycle)
        except ValueError:
            return None
        return self.billing_cycles.get(cycle)
