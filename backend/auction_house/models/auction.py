from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field

from auction_house.models_sqlalchemy.models import NotificationType, TransactionStatus


class AuctionCreate(BaseModel):
    title: str = Field(..., min_length=1)
    description: Optional[str] = None
    starting_price: Decimal = Field(..., gt=0, decimal_places=2)
    bid_increment: Decimal = Field(Decimal("1.00"), gt=0, decimal_places=2)
    start_time: datetime
    end_time: datetime
    image_url: Optional[str] = None


class BidCreate(BaseModel):
    amount: Decimal = Field(..., gt=0)


class NotificationCreate(BaseModel):
    user_id: str
    type: NotificationType
    title: str
    message: str
    auction_id: Optional[str] = None
    data: Optional[Dict[str, Any]] = None


class TransactionCreate(BaseModel):
    auction_id: str
    seller_id: str
    buyer_id: str
    final_amount: Decimal = Field(..., gt=0)


class TransactionUpdate(BaseModel):
    """Seller-side response to a settlement (accept, reject, counter, invoice)."""

    status: Optional[TransactionStatus] = None
    counter_offer_amount: Optional[Decimal] = Field(None, gt=0)
    counter_offer_message: Optional[str] = None
    invoice_url: Optional[str] = None
