"""Storefront actions for auctions and bids.

These are thin orchestrations over ``DataClient`` on behalf of the caller.
Validation happens here, before any write; the database itself only checks
identity through the row-level policies.

Bid placement is two independent writes (insert the bid, then update the
auction's highest bid) with no re-validation in between. Two bidders that
read the same highest bid can both pass validation, and whichever auction
update lands last wins regardless of amount.
"""
from __future__ import annotations

from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Dict, List, Mapping, Optional

from auction_house.config import settings
from auction_house.models.auction import AuctionCreate
from auction_house.models_sqlalchemy.models import AuctionStatus
from auction_house.models_sqlalchemy.triggers import compute_status
from auction_house.services.data_client import DataClient
from auction_house.utils import clock
from auction_house.utils.logger import logger


class AuctionValidationError(Exception):
    pass


class BidValidationError(Exception):
    def __init__(self, title: str, message: str):
        self.title = title
        super().__init__(message)


def _money(value: Any) -> Decimal:
    return Decimal(str(value)).quantize(Decimal("0.01"))


def minimum_bid(auction: Mapping[str, Any]) -> Decimal:
    if auction.get("current_highest_bid") is not None:
        return _money(auction["current_highest_bid"]) + _money(auction["bid_increment"])
    return _money(auction["starting_price"])


def suggested_next_bid(amount: Any, auction: Mapping[str, Any]) -> Decimal:
    return _money(amount) + _money(auction["bid_increment"])


def effective_status(auction: Mapping[str, Any], now: Optional[datetime] = None) -> str:
    """Status as it would read if the row were written at ``now``.

    Read-only; the stored status only moves when the row is next updated.
    """

    return compute_status(
        auction["status"],
        auction.get("start_time"),
        auction.get("end_time"),
        now or clock.now_utc(),
    )


def time_remaining(end_time: datetime, now: Optional[datetime] = None) -> str:
    now = clock.as_utc(now or clock.now_utc())
    end = clock.as_utc(end_time)
    if end < now:
        return "Ended"
    return f"Ends in {_humanize(end - now)}"


def _humanize(delta: timedelta) -> str:
    seconds = int(delta.total_seconds())
    if seconds < 60:
        return "less than a minute"
    minutes = seconds // 60
    if minutes < 60:
        return f"{minutes} minute{'s' if minutes != 1 else ''}"
    hours = minutes // 60
    if hours < 24:
        return f"about {hours} hour{'s' if hours != 1 else ''}"
    days = hours // 24
    return f"{days} day{'s' if days != 1 else ''}"


def create_auction(client: DataClient, payload: AuctionCreate, now: Optional[datetime] = None) -> Dict[str, Any]:
    if not client.caller.is_authenticated:
        raise AuctionValidationError("You must be signed in to create an auction")

    now = clock.as_utc(now or clock.now_utc())
    start_time = clock.as_utc(payload.start_time)
    end_time = clock.as_utc(payload.end_time)

    if start_time < now - timedelta(seconds=settings.AUCTION_START_GRACE_SECONDS):
        raise AuctionValidationError("Start time must be in the future")
    if end_time <= start_time:
        raise AuctionValidationError("End time must be after start time")

    row = client.insert(
        "auctions",
        {
            "seller_id": client.caller.user_id,
            "title": payload.title,
            "description": payload.description,
            "starting_price": payload.starting_price,
            "bid_increment": payload.bid_increment,
            "start_time": start_time,
            "end_time": end_time,
            "image_url": payload.image_url or None,
        },
    )
    logger.info("Auction %s created by seller %s", row["id"], client.caller.user_id)
    return row


def prepare_bid(client: DataClient, auction_id: str, amount: Any) -> Dict[str, Any]:
    """Read the auction and run the client-side bid checks.

    Returns the auction row the checks were made against. Nothing is
    written; a failed check raises BidValidationError.
    """

    if not client.caller.is_authenticated:
        raise BidValidationError("Sign in required", "You must be signed in to place a bid")

    auction = client.single("auctions", {"id": auction_id})
    amount = _money(amount)
    min_bid = minimum_bid(auction)

    if amount < min_bid:
        raise BidValidationError("Invalid bid", f"Minimum bid is ${min_bid:.2f}")
    if auction["seller_id"] == client.caller.user_id:
        raise BidValidationError("Invalid bid", "You cannot bid on your own auction")
    if auction["status"] != AuctionStatus.active.value:
        raise BidValidationError("Auction not active", "This auction is not currently accepting bids")
    return auction


def commit_bid(client: DataClient, auction: Mapping[str, Any], amount: Any) -> Dict[str, Any]:
    """Insert the bid, then point the auction at it in a second write."""

    amount = _money(amount)
    bid = client.insert(
        "bids",
        {"auction_id": auction["id"], "bidder_id": client.caller.user_id, "amount": amount},
    )

    # The bidder is not the seller, so the auctions update policy would
    # reject this write for them; it goes out under the service role.
    client.as_service().update(
        "auctions",
        {"current_highest_bid": amount, "highest_bidder_id": client.caller.user_id},
        {"id": auction["id"]},
    )
    logger.info("Bid %s of %s placed on auction %s by %s", bid["id"], amount, auction["id"], client.caller.user_id)
    return bid


def place_bid(client: DataClient, auction_id: str, amount: Any) -> Dict[str, Any]:
    auction = prepare_bid(client, auction_id, amount)
    bid = commit_bid(client, auction, amount)
    return {
        "bid": bid,
        "message": f"Your bid of ${_money(amount):.2f} has been placed successfully.",
        "suggested_next_bid": suggested_next_bid(amount, auction),
    }


def list_auctions(
    client: DataClient,
    search: Optional[str] = None,
    status: Optional[str] = None,
) -> List[Dict[str, Any]]:
    """Dashboard listing: newest first, seller name embedded.

    ``search`` matches title or description case-insensitively; ``status``
    filters on the stored status ("all" or None means no filter).
    """

    filters = {}
    if status and status != "all":
        filters["status"] = status
    rows = client.select(
        "auctions",
        filters=filters,
        order_by="created_at",
        desc=True,
        embed_profile="seller_id",
    )
    if search:
        needle = search.lower()
        rows = [
            row for row in rows
            if needle in (row.get("title") or "").lower() or needle in (row.get("description") or "").lower()
        ]
    return rows


def auction_detail(client: DataClient, auction_id: str, now: Optional[datetime] = None) -> Dict[str, Any]:
    auction = client.single("auctions", {"id": auction_id}, embed_profile="seller_id")
    now = now or clock.now_utc()
    return {
        **auction,
        "effective_status": effective_status(auction, now),
        "minimum_bid": minimum_bid(auction),
        "time_remaining": time_remaining(auction["end_time"], now),
    }


def recent_bids(client: DataClient, auction_id: str, limit: int = 10) -> List[Dict[str, Any]]:
    return client.select(
        "bids",
        filters={"auction_id": auction_id},
        order_by="created_at",
        desc=True,
        limit=limit,
        embed_profile="bidder_id",
    )
