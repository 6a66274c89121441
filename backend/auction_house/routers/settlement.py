from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.orm import Session

from auction_house.models.auction import NotificationCreate, TransactionCreate, TransactionUpdate
from auction_house.models_sqlalchemy import get_db
from auction_house.services import settlement
from auction_house.services.auth import get_caller, get_current_caller
from auction_house.services.data_client import DataClient
from auction_house.services.policies import Caller


router = APIRouter(prefix="/api", tags=["settlement"])


@router.get("/notifications")
async def list_notifications(
    unread_only: bool = False,
    caller: Caller = Depends(get_current_caller),
    db: Session = Depends(get_db),
):
    rows = settlement.list_notifications(DataClient(db, caller), unread_only=unread_only)
    return {"rows": rows, "unread": sum(1 for r in rows if not r["read"])}


@router.post("/notifications", status_code=status.HTTP_201_CREATED)
async def create_notification(
    payload: NotificationCreate,
    caller: Caller = Depends(get_caller),
    db: Session = Depends(get_db),
):
    # Inserts are open to any caller; there is no check on who notifies whom.
    return settlement.notify(DataClient(db, caller), payload)


@router.post("/notifications/{notification_id}/read")
async def mark_read(
    notification_id: str,
    caller: Caller = Depends(get_current_caller),
    db: Session = Depends(get_db),
):
    row = settlement.mark_notification_read(DataClient(db, caller), notification_id)
    if row is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Notification not found")
    return row


@router.get("/transactions")
async def list_transactions(
    caller: Caller = Depends(get_current_caller),
    db: Session = Depends(get_db),
):
    return {"rows": settlement.list_transactions(DataClient(db, caller))}


@router.post("/transactions", status_code=status.HTTP_201_CREATED)
async def create_transaction(
    payload: TransactionCreate,
    caller: Caller = Depends(get_caller),
    db: Session = Depends(get_db),
):
    return settlement.create_transaction(DataClient(db, caller), payload)


@router.patch("/transactions/{transaction_id}")
async def update_transaction(
    transaction_id: str,
    payload: TransactionUpdate,
    caller: Caller = Depends(get_current_caller),
    db: Session = Depends(get_db),
):
    row = settlement.update_transaction(DataClient(db, caller), transaction_id, payload)
    if row is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Transaction not found")
    return row
