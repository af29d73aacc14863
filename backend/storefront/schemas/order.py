from decimal import Decimal
from typing import Optional
from pydantic import BaseModel, Field, field_validator


class CreateOrderRequest(BaseModel):
    amount: Decimal
    promo_code: Optional[str] = None
    request_id: Optional[str] = Field(default=None, max_length=64)

    @field_validator("promo_code")
    @classmethod
    def blank_to_none(cls, v):
        # 空文字は「コードなし」扱い
        if v is None or not v.strip():
            return None
        return v.strip()


class ApplyPromoRequest(BaseModel):
    order_amount: Decimal = Field(gt=0)
    promo_code: str = Field(min_length=1, max_length=50)


class GenerateTestOrdersRequest(BaseModel):
    count: int = Field(default=5, ge=1, le=100)
