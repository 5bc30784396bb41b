from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict


class InventoryItemCreate(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    itemName: str
    totalQuantity: int
    itemCode: Optional[str] = None
    category: Optional[str] = None
    description: Optional[str] = None
    lowStockThreshold: Optional[int] = None


class RestockRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    quantityChange: int
    reason: Optional[str] = None
    requestedBy: Optional[str] = None


class ItemStatusUpdate(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    status: Literal["Active", "Maintenance", "Lost"]
    requestedBy: Optional[str] = None
