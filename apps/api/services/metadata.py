"""
Typed payment metadata carried through the gateway.

Metadata is decoded once, where a gateway payload enters the service, into
one of three payloads discriminated by ``type``.
"""
import json
from typing import Annotated, Any, Dict, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter
from pydantic import ValidationError as PydanticValidationError

from apps.core.config import PaymentPurpose
from apps.core.exceptions import ValidationError


class SubscriptionPurchase(BaseModel):
    """First payment for a new subscription."""
    model_config = ConfigDict(extra="ignore")

    type: Literal["subscription"] = PaymentPurpose.PURCHASE.value
    owner_id: str
    plan_id: str
    size: int
    frequency: str
    subscription_period: int = 1
    subscription_id: Optional[str] = None


class SubscriptionRenewal(BaseModel):
    """
    Payment renewing an existing subscription.

    subscription_id is the record to reactivate; new_subscription_id is the
    pending placeholder opened by the renew request.
    """
    model_config = ConfigDict(extra="ignore")

    type: Literal["renewal"] = PaymentPurpose.RENEWAL.value
    owner_id: str
    plan_id: str
    subscription_id: str
    new_subscription_id: Optional[str] = None


class OtherPurchase(BaseModel):
    """Anything not related to subscriptions (one-off orders, top-ups)."""
    model_config = ConfigDict(extra="allow")

    type: Literal["other"] = PaymentPurpose.OTHER.value


GatewayMetadata = Annotated[
    Union[SubscriptionPurchase, SubscriptionRenewal, OtherPurchase],
    Field(discriminator="type")
]

_metadata_adapter = TypeAdapter(GatewayMetadata)

_SUBSCRIPTION_TYPES = {PaymentPurpose.PURCHASE.value, PaymentPurpose.RENEWAL.value}


def decode_metadata(raw: Any) -> Union[SubscriptionPurchase, SubscriptionRenewal, OtherPurchase]:
    """Decode gateway metadata (dict or JSON string) into a typed payload."""
    if raw in (None, ""):
        return OtherPurchase()

    if isinstance(raw, str):
        try:
            raw = json.loads(raw)
        except json.JSONDecodeError as e:
            raise ValidationError("Payment metadata is not valid JSON", details={"reason": str(e)})

    if not isinstance(raw, dict):
        raise ValidationError("Payment metadata must be an object")

    payload = dict(raw)
    if payload.get("type") not in _SUBSCRIPTION_TYPES:
        payload["type"] = PaymentPurpose.OTHER.value

    try:
        return _metadata_adapter.validate_python(payload)
    except PydanticValidationError as e:
        raise ValidationError(
            "Payment metadata is incomplete",
            details={"type": payload["type"], "reason": str(e)}
        )


def encode_metadata(metadata: BaseModel) -> Dict[str, Any]:
    return metadata.model_dump(exclude_none=True)
