"""
hostportal/models/dns_plan.py

DnsPlan model for the DNS hosting plan catalog.

Prices are held in integer cents; one cent equals one VirtFusion token.
"""

from decimal import Decimal
from typing import List, Optional
from pydantic import BaseModel, ConfigDict

from hostportal.features.dns_plans.billing_clock import cents_to_amount


class DnsPlan(BaseModel):
    """
    DnsPlan represents a purchasable DNS hosting tier.

    Examples:
    - Free (1 domain, $0)
    - Basic
    - Pro
    - Enterprise
    """
    model_config = ConfigDict(frozen=True)

    id: int
    name: str
    description: str = ""
    monthly_price_cents: int
    max_domains: int
    max_records: int
    features: List[str] = []
    is_active: bool = True
    display_order: int = 0

    @property
    def price(self) -> Decimal:
        """Monthly price in currency units."""
        return cents_to_amount(self.monthly_price_cents)

    @property
    def is_free(self) -> bool:
        return self.monthly_price_cents <= 0

    def summary(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "price": str(self.price),
            "max_domains": self.max_domains,
            "max_records": self.max_records,
        }


class ManagedDomain(BaseModel):
    """A domain the user manages, optionally linked to an InterServer zone."""
    model_config = ConfigDict(frozen=True)

    id: int
    user_id: str
    name: str
    external_id: Optional[int] = None
    status: str = "active"
