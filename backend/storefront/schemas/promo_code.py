from datetime import datetime
from decimal import Decimal
from typing import Optional
from pydantic import BaseModel, Field, field_validator


class ValidatePromoCodeRequest(BaseModel):
    code: str = Field(min_length=1, max_length=50)
    user_id: int


class ApplyPromoCodeRequest(BaseModel):
    code: str = Field(min_length=1, max_length=50)
    user_id: int
    order_amount: Decimal = Field(gt=0)


class PromoCodeCreate(BaseModel):
    code: Optional[str] = Field(default=None, min_length=4, max_length=50)
    discount_percent: int = Field(ge=1, le=100)
    max_usage: int = Field(default=100, ge=1)
    max_usage_per_user: int = Field(default=1, ge=1)
    valid_from: Optional[datetime] = None
    valid_until: Optional[datetime] = None

    @field_validator("valid_until")
    @classmethod
    def validate_period(cls, v, info):
        valid_from = info.data.get("valid_from")
        if v is not None and valid_from is not None and v <= valid_from:
            raise ValueError("validUntil must be after validFrom")
        return v
