"""
Read-only access to the plan catalog.
"""
from typing import Optional, Tuple, Union

import structlog
from sqlmodel import Session

from apps.core.config import Frequency
from apps.core.exceptions import NotFoundError, ValidationError
from apps.db.models import SubscriptionPlan, parse_cylinder_size

logger = structlog.get_logger(__name__)


class PlanCatalog:
    """Looks up plans and checks requested options against them."""

    def __init__(self, session: Session):
        self.session = session

    def get_plan(self, plan_id: str, require_active: bool = True) -> SubscriptionPlan:
        plan = self.session.get(SubscriptionPlan, plan_id)
        if plan is None:
            raise NotFoundError("Plan", plan_id)
        if require_active and not plan.is_active:
            logger.info("Inactive plan requested", plan_id=plan_id)
            raise ValidationError("Plan is no longer available", details={"plan_id": plan_id})
        return plan

    def validate_request(
        self,
        plan: SubscriptionPlan,
        size: Union[str, int],
        frequency: str,
        subscription_period: Optional[int]
    ) -> Tuple[int, Frequency, int]:
        """
        Check size, frequency and period against the plan.

        Returns the normalized (size_kg, frequency, period). One-time
        deliveries carry no period and are normalized to 1.
        """
        if size in (None, "") or not frequency:
            raise ValidationError("Size and frequency are required")

        if not plan.supports_cylinder_size(size):
            raise ValidationError(
                "Selected size is not supported by this plan",
                details={"plan_id": plan.id, "size": str(size)}
            )

        if not plan.supports_frequency(frequency):
            raise ValidationError(
                "Selected frequency is not supported by this plan",
                details={"plan_id": plan.id, "frequency": frequency}
            )

        parsed_frequency = Frequency.parse(frequency)
        if parsed_frequency == Frequency.ONE_TIME:
            return parse_cylinder_size(size), parsed_frequency, 1

        if subscription_period is None:
            raise ValidationError("Subscription period is required for recurring deliveries")

        if not plan.supports_subscription_period(subscription_period):
            raise ValidationError(
                "Selected subscription period is not supported by this plan",
                details={"plan_id": plan.id, "subscription_period": subscription_period}
            )

        return parse_cylinder_size(size), parsed_frequency, subscription_period

    def calculate_price(self, plan: SubscriptionPlan, size: Union[str, int]) -> float:
        return plan.calculate_price(size)
