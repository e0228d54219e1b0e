from typing import Optional

from pydantic import BaseModel, ConfigDict


class EquipmentCreate(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    name: str
    totalQuantity: int
    itemCode: Optional[str] = None
    category: Optional[str] = None
    condition: Optional[str] = "Good"
    roomAssigned: Optional[str] = None
    canBeBorrowed: bool = True


class QuantityMove(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    quantity: int
    direction: Optional[str] = None
    fromMaintenance: bool = False
