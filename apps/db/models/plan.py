"""
Subscription plan catalog record.

Plans are maintained by the catalog team; this service reads them to
validate requested size/frequency/period combinations and to price a
subscription.
"""

import re
from datetime import datetime
from typing import List, Union
import uuid

from sqlmodel import SQLModel, Field, Column, JSON

from apps.core.config import Frequency, PlanType, MAX_SUBSCRIPTION_PERIOD, utcnow

_SIZE_PATTERN = re.compile(r"^\s*(\d+(?:\.\d+)?)\s*(?:kg)?\s*$", re.IGNORECASE)


def parse_cylinder_size(value: Union[str, int, float]) -> int:
    """Normalize "6kg", "6" or 6 to an integer number of kilograms."""
    if isinstance(value, bool):
        raise ValueError(f"Invalid cylinder size: {value!r}")
    if isinstance(value, (int, float)):
        return int(value)
    match = _SIZE_PATTERN.match(str(value))
    if not match:
        raise ValueError(f"Invalid cylinder size: {value!r}")
    return int(float(match.group(1)))


class SubscriptionPlan(SQLModel, table=True):
    """
    A purchasable plan.

    Plan types restrict what can be ordered:
    - preset: one fixed size, a list of delivery frequencies and periods
    - custom: any size inside a range, any recurring frequency
    - one-time: listed sizes, One-Time frequency only, no period
    - emergency: listed sizes, listed frequencies and periods
    """
    __tablename__ = "subscription_plans"

    id: str = Field(
        default_factory=lambda: str(uuid.uuid4()),
        primary_key=True,
        description="Unique plan identifier"
    )

    name: str = Field(unique=True, index=True)
    description: str = Field(default="")
    type: str = Field(default=PlanType.PRESET.value, index=True)

    base_size: int = Field(default=12, description="Cylinder size in kg for preset plans")
    price_per_kg: float = Field(default=1500.0, ge=0)
    additional_fee_per_kg: float = Field(default=0.0, ge=0)

    delivery_frequencies: List[str] = Field(default_factory=list, sa_column=Column(JSON))
    subscription_periods: List[int] = Field(default_factory=list, sa_column=Column(JSON))
    cylinder_sizes: List[int] = Field(default_factory=list, sa_column=Column(JSON))

    size_range_min: int = Field(default=5)
    size_range_max: int = Field(default=100)

    is_active: bool = Field(default=True, index=True)

    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @property
    def total_price_per_kg(self) -> float:
        return self.price_per_kg + self.additional_fee_per_kg

    def supports_frequency(self, frequency: Union[str, Frequency]) -> bool:
        """Check whether deliveries at this cadence can be ordered."""
        try:
            requested = Frequency.parse(frequency)
        except ValueError:
            return False

        if self.type == PlanType.ONE_TIME.value:
            return requested == Frequency.ONE_TIME
        if self.type == PlanType.CUSTOM.value:
            return requested != Frequency.ONE_TIME

        offered = set()
        for value in self.delivery_frequencies or []:
            try:
                offered.add(Frequency.parse(value))
            except ValueError:
                continue
        return requested in offered

    def supports_cylinder_size(self, size: Union[str, int]) -> bool:
        """Check whether a cylinder size can be ordered on this plan."""
        try:
            size_kg = parse_cylinder_size(size)
        except ValueError:
            return False

        if self.type == PlanType.CUSTOM.value:
            return self.size_range_min <= size_kg <= self.size_range_max
        if self.type in (PlanType.ONE_TIME.value, PlanType.EMERGENCY.value):
            return size_kg in [parse_cylinder_size(s) for s in self.cylinder_sizes or []]
        return size_kg == self.base_size

    def supports_subscription_period(self, months: int) -> bool:
        """One-time plans have no period; others list the months they sell."""
        if self.type == PlanType.ONE_TIME.value:
            return False
        if not isinstance(months, int) or not 1 <= months <= MAX_SUBSCRIPTION_PERIOD:
            return False
        return months in (self.subscription_periods or [])

    def calculate_price(self, size: Union[str, int]) -> float:
        """Price of one delivery: size in kg times the per-kg total."""
        size_kg = parse_cylinder_size(size)
        return float(size_kg * self.total_price_per_kg)
