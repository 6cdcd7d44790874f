import uuid
from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field

STRIPE_PRICE_ID_PATTERN = r"^price_[a-zA-Z0-9]{24,}$"


class CheckoutRequest(BaseModel):
    price_id: str = Field(
        alias="priceId",
        min_length=1,
        pattern=STRIPE_PRICE_ID_PATTERN,
        description="Stripe price ID for the subscription plan",
    )

    model_config = ConfigDict(populate_by_name=True)


class CheckoutResponse(BaseModel):
    url: str
    session_id: str = Field(serialization_alias="sessionId")


class PortalResponse(BaseModel):
    url: str


class WebhookMetadata(BaseModel):
    """Metadata attached to checkout sessions so webhooks can attribute the subscription."""

    user_id: uuid.UUID
    product_id: str = Field(min_length=1)


class SubscriptionStatusResponse(BaseModel):
    is_pro: bool
    product_id: str | None = None
    product_name: str | None = None
    status: str | None = None
    current_period_end: datetime | None = None
    cancel_at_period_end: bool = False

    model_config = {"from_attributes": True}


class PlanResponse(BaseModel):
    price_id: str
    product_id: str
    name: str
    description: str | None = None
    unit_amount: int | None = None
    currency: str
    interval: str | None = None


class WebhookAck(BaseModel):
    received: bool = True
