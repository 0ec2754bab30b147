from datetime import datetime
from typing import Optional, Union

from pydantic import BaseModel, ConfigDict, Field


class MarketplaceNotification(BaseModel):
    """Notification body posted by the marketplace, e.g. ``{"resource": "/orders/123", "topic": "orders_v2"}``"""
    model_config = ConfigDict(extra="ignore")

    resource: str = Field(min_length=1)
    topic: str = Field(min_length=1)
    user_id: Union[int, str]
    application_id: Optional[Union[int, str]] = None
    attempts: int = 1
    sent: Optional[datetime] = None
    received: Optional[datetime] = None
