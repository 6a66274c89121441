"""Generic table endpoints (the storefront's data API).

Query syntax follows the hosted REST layer:
``GET /api/data/auctions?select=id,title&status=eq.active&order=created_at.desc&limit=20``.
Only equality filters are supported.
"""
from __future__ import annotations

from typing import Any, Dict, Optional

from fastapi import APIRouter, Body, Depends, HTTPException, Query, Request, status
from sqlalchemy.orm import Session

from auction_house.models_sqlalchemy import get_db
from auction_house.services.auth import get_caller
from auction_house.services.data_client import DataClient
from auction_house.services.policies import Caller

router = APIRouter(prefix="/api/data", tags=["data"])

_RESERVED_PARAMS = {"select", "order", "limit", "token", "embed"}


def _equality_filters(request: Request) -> Dict[str, str]:
    filters: Dict[str, str] = {}
    for key, raw in request.query_params.items():
        if key in _RESERVED_PARAMS:
            continue
        if not raw.startswith("eq."):
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail=f"Unsupported filter for {key}: {raw} (only eq. is supported)",
            )
        filters[key] = raw[len("eq."):]
    return filters


def _parse_order(order: Optional[str]):
    if not order:
        return None, False
    column, _, direction = order.partition(".")
    direction = direction or "asc"
    if direction not in ("asc", "desc"):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=f"Invalid order: {order}")
    return column, direction == "desc"


@router.get("/{table}")
async def select_rows(
    table: str,
    request: Request,
    select: str = "*",
    order: Optional[str] = None,
    limit: Optional[int] = Query(None, ge=0),
    embed: Optional[str] = None,
    caller: Caller = Depends(get_caller),
    db: Session = Depends(get_db),
):
    order_by, desc = _parse_order(order)
    client = DataClient(db, caller)
    return client.select(
        table,
        columns=select,
        filters=_equality_filters(request),
        order_by=order_by,
        desc=desc,
        limit=limit,
        embed_profile=embed,
    )


@router.post("/{table}", status_code=status.HTTP_201_CREATED)
async def insert_row(
    table: str,
    values: Dict[str, Any] = Body(...),
    caller: Caller = Depends(get_caller),
    db: Session = Depends(get_db),
):
    return DataClient(db, caller).insert(table, values)


@router.patch("/{table}")
async def update_rows(
    table: str,
    request: Request,
    values: Dict[str, Any] = Body(...),
    caller: Caller = Depends(get_caller),
    db: Session = Depends(get_db),
):
    return DataClient(db, caller).update(table, values, _equality_filters(request))


@router.delete("/{table}")
async def delete_rows(
    table: str,
    request: Request,
    caller: Caller = Depends(get_caller),
    db: Session = Depends(get_db),
):
    return DataClient(db, caller).delete(table, _equality_filters(request))
