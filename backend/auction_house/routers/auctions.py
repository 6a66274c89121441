from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.orm import Session

from auction_house.models.auction import AuctionCreate, BidCreate
from auction_house.models_sqlalchemy import get_db
from auction_house.services import auction_actions
from auction_house.services.auth import get_caller, get_current_caller
from auction_house.services.data_client import DataClient
from auction_house.services.policies import Caller


router = APIRouter(prefix="/api/auctions", tags=["auctions"])


@router.get("")
async def list_auctions(
    search: Optional[str] = Query(None, description="Case-insensitive match on title or description"),
    status_filter: Optional[str] = Query(
        None, alias="status", description="all, pending, active, ended or cancelled"
    ),
    caller: Caller = Depends(get_caller),
    db: Session = Depends(get_db),
):
    """Dashboard listing, newest first, with the seller's name embedded."""

    rows = auction_actions.list_auctions(DataClient(db, caller), search=search, status=status_filter)
    return {"rows": rows, "total": len(rows)}


@router.post("", status_code=status.HTTP_201_CREATED)
async def create_auction(
    payload: AuctionCreate,
    caller: Caller = Depends(get_current_caller),
    db: Session = Depends(get_db),
):
    return auction_actions.create_auction(DataClient(db, caller), payload)


@router.get("/{auction_id}")
async def get_auction(
    auction_id: str,
    caller: Caller = Depends(get_caller),
    db: Session = Depends(get_db),
):
    """Auction detail plus the values the bid form needs.

    ``effective_status`` is recomputed against the current time for display;
    the stored ``status`` only changes on the next write to the row.
    """

    return auction_actions.auction_detail(DataClient(db, caller), auction_id)


@router.get("/{auction_id}/bids")
async def list_bids(
    auction_id: str,
    limit: int = Query(10, ge=1, le=100),
    caller: Caller = Depends(get_caller),
    db: Session = Depends(get_db),
):
    return {"rows": auction_actions.recent_bids(DataClient(db, caller), auction_id, limit=limit)}


@router.post("/{auction_id}/bids", status_code=status.HTTP_201_CREATED)
async def place_bid(
    auction_id: str,
    payload: BidCreate,
    caller: Caller = Depends(get_current_caller),
    db: Session = Depends(get_db),
):
    return auction_actions.place_bid(DataClient(db, caller), auction_id, payload.amount)
