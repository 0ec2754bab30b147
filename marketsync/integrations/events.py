"""
Events consumed from the inventory module.
"""

import uuid
from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field

from marketsync.core.utils import utc_now


class StockChangeEvent(BaseModel):
    """Sellable quantity changed for a product (or one of its variants)."""
    tenant_id: uuid.UUID
    product_id: uuid.UUID
    variant_id: Optional[uuid.UUID] = None
    timestamp: datetime = Field(default_factory=utc_now)
