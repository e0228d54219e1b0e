from decimal import Decimal
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict


class ReturnReview(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    decision: Literal["approved", "rejected", "completed"]
    damageFee: Optional[Decimal] = None
    remarks: Optional[str] = None
    reviewedBy: Optional[str] = None


class FeeSettlement(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    receivedBy: Optional[str] = None
