from sqlalchemy import Column, String, DateTime, Text, ForeignKey, Boolean, Index, Numeric, JSON, CheckConstraint
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import relationship
import enum
import uuid

from . import Base
from auction_house.utils import clock


def _uuid() -> str:
    return str(uuid.uuid4())


def _now():
    return clock.now_utc()


# JSONB on Postgres, plain JSON elsewhere (tests run on SQLite).
JsonPayload = JSON().with_variant(JSONB(), "postgresql")


class AuctionStatus(str, enum.Enum):
    pending = "pending"
    active = "active"
    ended = "ended"
    cancelled = "cancelled"


class NotificationType(str, enum.Enum):
    new_bid = "new_bid"
    outbid = "outbid"
    auction_ended = "auction_ended"
    bid_accepted = "bid_accepted"
    bid_rejected = "bid_rejected"
    counter_offer = "counter_offer"


class TransactionStatus(str, enum.Enum):
    pending = "pending"
    accepted = "accepted"
    rejected = "rejected"
    completed = "completed"


def _in_check(column: str, enum_cls) -> str:
    values = ", ".join(f"'{member.value}'" for member in enum_cls)
    return f"{column} IN ({values})"


class User(Base):
    """Authenticated identity (the hosted platform's ``auth.users``).

    Inserting a row here provisions the matching ``profiles`` row through the
    after-insert trigger in ``triggers.py``.
    """

    __tablename__ = "users"

    id = Column(String(36), primary_key=True, default=_uuid)
    email = Column(String(255), nullable=False, unique=True, index=True)
    hashed_password = Column(String(255), nullable=False)
    # Raw user metadata supplied at signup; only full_name is used.
    full_name = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_now)

    profile = relationship("Profile", back_populates="user", uselist=False, passive_deletes=True)


class Profile(Base):
    __tablename__ = "profiles"

    id = Column(String(36), primary_key=True, default=_uuid)
    user_id = Column(String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, unique=True)
    email = Column(Text, nullable=False)
    full_name = Column(Text, nullable=True)
    avatar_url = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_now)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=_now)

    user = relationship("User", back_populates="profile")


class Auction(Base):
    __tablename__ = "auctions"

    id = Column(String(36), primary_key=True, default=_uuid)
    seller_id = Column(String(36), ForeignKey("profiles.user_id", ondelete="CASCADE"), nullable=False, index=True)
    title = Column(Text, nullable=False)
    description = Column(Text, nullable=True)

    starting_price = Column(Numeric(10, 2), nullable=False)
    bid_increment = Column(Numeric(10, 2), nullable=False, default=1.00, server_default="1.00")
    current_highest_bid = Column(Numeric(10, 2), nullable=True)
    highest_bidder_id = Column(String(36), ForeignKey("profiles.user_id"), nullable=True)

    # end_time > start_time is checked by the create action only; the schema
    # does not enforce it.
    start_time = Column(DateTime(timezone=True), nullable=False)
    end_time = Column(DateTime(timezone=True), nullable=False)

    status = Column(String(16), nullable=False, default=AuctionStatus.pending.value, server_default="pending")
    image_url = Column(Text, nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=False, default=_now)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=_now)

    seller = relationship("Profile", foreign_keys=[seller_id])
    bids = relationship("Bid", back_populates="auction", cascade="all, delete-orphan", passive_deletes=True)

    __table_args__ = (
        CheckConstraint(_in_check("status", AuctionStatus), name="auctions_status_check"),
        Index("idx_auctions_status", "status"),
        Index("idx_auctions_created_at", "created_at"),
    )


class Bid(Base):
    """An offer against an auction.

    There is deliberately no server-side check on the amount: the minimum
    increment, self-bidding and auction status rules live in the client
    action only.
    """

    __tablename__ = "bids"

    id = Column(String(36), primary_key=True, default=_uuid)
    auction_id = Column(String(36), ForeignKey("auctions.id", ondelete="CASCADE"), nullable=False, index=True)
    bidder_id = Column(String(36), ForeignKey("profiles.user_id", ondelete="CASCADE"), nullable=False, index=True)
    amount = Column(Numeric(10, 2), nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_now)

    auction = relationship("Auction", back_populates="bids")
    bidder = relationship("Profile", foreign_keys=[bidder_id])


class Notification(Base):
    __tablename__ = "notifications"

    id = Column(String(36), primary_key=True, default=_uuid)
    user_id = Column(String(36), ForeignKey("profiles.user_id", ondelete="CASCADE"), nullable=False, index=True)
    auction_id = Column(String(36), ForeignKey("auctions.id", ondelete="CASCADE"), nullable=True)
    type = Column(String(32), nullable=False)
    title = Column(Text, nullable=False)
    message = Column(Text, nullable=False)
    read = Column(Boolean, nullable=False, default=False, server_default="false")
    data = Column(JsonPayload, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_now)

    __table_args__ = (
        CheckConstraint(_in_check("type", NotificationType), name="notifications_type_check"),
        Index("idx_notifications_user_read", "user_id", "read"),
    )


class Transaction(Base):
    """Post-auction settlement record between seller and buyer."""

    __tablename__ = "transactions"

    id = Column(String(36), primary_key=True, default=_uuid)
    auction_id = Column(String(36), ForeignKey("auctions.id", ondelete="CASCADE"), nullable=False, index=True)
    seller_id = Column(String(36), ForeignKey("profiles.user_id", ondelete="CASCADE"), nullable=False, index=True)
    buyer_id = Column(String(36), ForeignKey("profiles.user_id", ondelete="CASCADE"), nullable=False, index=True)
    final_amount = Column(Numeric(10, 2), nullable=False)
    status = Column(String(16), nullable=False, default=TransactionStatus.pending.value, server_default="pending")
    counter_offer_amount = Column(Numeric(10, 2), nullable=True)
    counter_offer_message = Column(Text, nullable=True)
    invoice_url = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_now)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=_now)

    __table_args__ = (
        CheckConstraint(_in_check("status", TransactionStatus), name="transactions_status_check"),
    )


# Tables reachable through the generic data client / change feed.
PUBLIC_TABLES = {
    "profiles": Profile,
    "auctions": Auction,
    "bids": Bid,
    "notifications": Notification,
    "transactions": Transaction,
}


# Registers the lifecycle triggers against the classes above.
from . import triggers  # noqa: E402,F401
