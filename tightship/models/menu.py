"""
tightship/models/menu.py

Restaurant and product rows. Only the fields that plan limits count against
are modelled here.
"""

from datetime import datetime
from enum import Enum
from typing import Optional
from pydantic import BaseModel, ConfigDict


class ProductType(str, Enum):
    STANDALONE = "STANDALONE"
    PARENT = "PARENT"
    VARIANT = "VARIANT"


# A parent and its variants count as one product against the plan limit
COUNTED_PRODUCT_TYPES = frozenset({ProductType.STANDALONE, ProductType.PARENT})


class Restaurant(BaseModel):
    model_config = ConfigDict(frozen=True)

    restaurant_id: str
    organization_id: str
    name: str
    is_active: bool = True
    created_at: Optional[datetime] = None


class Product(BaseModel):
    model_config = ConfigDict(frozen=True)

    product_id: str
    restaurant_id: str
    name: str
    product_type: ProductType = ProductType.STANDALONE
    parent_product_id: Optional[str] = None
    is_active: bool = True
    created_at: Optional[datetime] = None
