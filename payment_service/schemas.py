from pydantic import BaseModel, ConfigDict, Field, field_validator
from typing import List, Any, Literal, Optional
from decimal import Decimal
import json
from datetime import datetime
from payment_service.models import AttemptOutcome, OrderStatus

ORDER_ID_PATTERN = r"^[A-Za-z0-9_-]{1,64}$"


class Item(BaseModel):
    product_id: str = Field(..., min_length=1, max_length=64, examples=["product-1"])
    quantity: int = Field(..., gt=0, examples=[2])


class OrderCreate(BaseModel):
    customer_id: str = Field(..., min_length=1, max_length=64, examples=["customer-123"])
    items: List[Item] = Field(..., min_length=1)
    amount: Decimal = Field(..., gt=0, max_digits=12, decimal_places=2, examples=["49.99"])
    currency: Optional[str] = Field(None, min_length=3, max_length=3, examples=["inr"])


class PaymentAttemptRead(BaseModel):
    id: str
    sequence: int
    gateway_reference: Optional[str]
    outcome: AttemptOutcome
    failure_reason: Optional[str]
    created_at: datetime
    resolved_at: Optional[datetime]

    class Config:
        from_attributes = True


class OrderStatusHistoryRead(BaseModel):
    status: OrderStatus
    note: Optional[str]
    created_at: datetime

    class Config:
        from_attributes = True


class OrderRead(BaseModel):
    id: str
    customer_id: str
    items: List[Item]
    amount: Decimal
    currency: str
    status: OrderStatus
    created_at: datetime
    updated_at: datetime
    paid_at: Optional[datetime]
    cancelled_at: Optional[datetime]
    attempts: List[PaymentAttemptRead] = []
    history: List[OrderStatusHistoryRead] = []

    @field_validator('items', mode='before')
    @classmethod
    def parse_items(cls, v: Any) -> List[Item]:
        if isinstance(v, str):
            return json.loads(v)
        return v

    class Config:
        from_attributes = True


class PaymentInitiated(BaseModel):
    order_id: str
    attempt_id: str
    gateway_reference: str
    client_secret: str

    class Config:
        from_attributes = True


class PaymentStatusRead(BaseModel):
    order_id: str
    status: Literal["pending", "success", "failed"]


class PaymentReviewRead(BaseModel):
    id: int
    order_id: str
    attempt_id: str
    gateway_reference: Optional[str]
    dedup_key: Optional[str]
    reason: str
    created_at: datetime

    class Config:
        from_attributes = True


# Inbound gateway notification, validated only after its signature checks out

class GatewayEventObject(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str = Field(..., min_length=1)


class GatewayEventData(BaseModel):
    model_config = ConfigDict(extra="ignore")

    object: GatewayEventObject


class GatewayEvent(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str = Field(..., min_length=1)
    type: str
    data: GatewayEventData


class WebhookAck(BaseModel):
    status_code: int = Field(200, exclude=True)
    received: bool = True
    status: str
