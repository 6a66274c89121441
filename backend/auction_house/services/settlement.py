"""Notification and transaction actions.

Both tables are populated only by these explicit calls: no trigger creates
a notification when a bid lands or a transaction when an auction ends.
"""
from __future__ import annotations

from typing import Any, Dict, List, Optional

from auction_house.models.auction import NotificationCreate, TransactionCreate, TransactionUpdate
from auction_house.services.data_client import DataClient
from auction_house.utils.logger import logger


def notify(client: DataClient, payload: NotificationCreate) -> Dict[str, Any]:
    row = client.insert(
        "notifications",
        {
            "user_id": payload.user_id,
            "auction_id": payload.auction_id,
            "type": payload.type.value,
            "title": payload.title,
            "message": payload.message,
            "data": payload.data,
        },
    )
    logger.info("Notification %s (%s) sent to %s", row["id"], row["type"], row["user_id"])
    return row


def list_notifications(client: DataClient, unread_only: bool = False) -> List[Dict[str, Any]]:
    filters = {"read": False} if unread_only else None
    return client.select("notifications", filters=filters, order_by="created_at", desc=True)


def mark_notification_read(client: DataClient, notification_id: str) -> Optional[Dict[str, Any]]:
    rows = client.update("notifications", {"read": True}, {"id": notification_id})
    return rows[0] if rows else None


def create_transaction(client: DataClient, payload: TransactionCreate) -> Dict[str, Any]:
    row = client.insert(
        "transactions",
        {
            "auction_id": payload.auction_id,
            "seller_id": payload.seller_id,
            "buyer_id": payload.buyer_id,
            "final_amount": payload.final_amount,
        },
    )
    logger.info("Transaction %s opened for auction %s", row["id"], row["auction_id"])
    return row


def list_transactions(client: DataClient) -> List[Dict[str, Any]]:
    return client.select("transactions", order_by="created_at", desc=True)


def update_transaction(client: DataClient, transaction_id: str, payload: TransactionUpdate) -> Optional[Dict[str, Any]]:
    values: Dict[str, Any] = payload.model_dump(exclude_none=True)
    if "status" in values:
        values["status"] = payload.status.value
    rows = client.update("transactions", values, {"id": transaction_id})
    return rows[0] if rows else None
