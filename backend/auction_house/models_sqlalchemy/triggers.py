"""Row lifecycle triggers, expressed as SQLAlchemy ORM events.

These mirror the PL/pgSQL functions installed by the Alembic migration
(``update_updated_at_column``, ``handle_new_user``,
``update_auction_status``) so the same rules hold on any backend the ORM
talks to. Bulk ``Query.update()`` calls bypass them, which is why the data
client always updates through loaded instances.
"""
from __future__ import annotations

from datetime import datetime
from typing import Optional

from sqlalchemy import event
from sqlalchemy.orm import Session

from auction_house.utils import clock
from auction_house.utils.logger import logger
from .models import Auction, AuctionStatus, Profile, Transaction, User, _uuid


def compute_status(
    status: str,
    start_time: Optional[datetime],
    end_time: Optional[datetime],
    now: datetime,
) -> str:
    """Return the status an auction row should carry at ``now``.

    Only pending -> active and active -> ended are automatic; a single call
    never skips from pending straight to ended, and cancelled/ended rows are
    left alone.
    """

    start = clock.as_utc(start_time)
    end = clock.as_utc(end_time)
    now = clock.as_utc(now)
    if start is None or end is None:
        return status

    if start <= now < end and status == AuctionStatus.pending.value:
        return AuctionStatus.active.value
    if end <= now and status == AuctionStatus.active.value:
        return AuctionStatus.ended.value
    return status


def _touch_updated_at(mapper, connection, target) -> None:
    target.updated_at = clock.now_utc()


for _model in (Profile, Auction, Transaction):
    event.listen(_model, "before_update", _touch_updated_at)


@event.listens_for(Auction, "before_update")
def _update_auction_status(mapper, connection, target: Auction) -> None:
    new_status = compute_status(target.status, target.start_time, target.end_time, clock.now_utc())
    if new_status != target.status:
        logger.info(
            "Auction %s status %s -> %s",
            target.id,
            target.status,
            new_status,
        )
        target.status = new_status


@event.listens_for(Session, "before_flush")
def _provision_profiles(session: Session, flush_context, instances) -> None:
    """Create one profile per newly inserted identity.

    Runs inside the same flush as the identity insert and outside the policy
    layer, so it succeeds regardless of the new user's own permissions. A
    duplicate profile surfaces as an IntegrityError on flush; there is no
    retry.

    On PostgreSQL the ``on_user_created`` database trigger installed by the
    migrations owns provisioning, so this hook stands down there.
    """

    bind = session.get_bind()
    if bind is not None and bind.dialect.name == "postgresql":
        return

    for obj in list(session.new):
        if not isinstance(obj, User) or obj.profile is not None:
            continue
        if obj.id is None:
            obj.id = _uuid()
        profile = Profile(user_id=obj.id, email=obj.email, full_name=obj.full_name)
        obj.profile = profile
        session.add(profile)
        logger.info("Provisioning profile for new identity %s (%s)", obj.id, obj.email)
