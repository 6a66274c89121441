from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy.exc import IntegrityError

from auction_house.models_sqlalchemy.models import Profile, User
from auction_house.models_sqlalchemy.triggers import compute_status
from auction_house.utils import clock

T0 = datetime(2025, 8, 20, 12, 0, tzinfo=timezone.utc)
HOUR = timedelta(hours=1)


def test_compute_status_pending_becomes_active_inside_window():
    assert compute_status("pending", T0 - HOUR, T0 + HOUR, T0) == "active"
    # start_time is inclusive
    assert compute_status("pending", T0, T0 + HOUR, T0) == "active"


def test_compute_status_active_becomes_ended_at_end_time():
    assert compute_status("active", T0 - HOUR, T0, T0) == "ended"
    assert compute_status("active", T0 - 2 * HOUR, T0 - HOUR, T0) == "ended"


def test_compute_status_pending_never_skips_to_ended():
    assert compute_status("pending", T0 - 2 * HOUR, T0 - HOUR, T0) == "pending"


def test_compute_status_leaves_terminal_and_future_rows_alone():
    assert compute_status("pending", T0 + HOUR, T0 + 2 * HOUR, T0) == "pending"
    assert compute_status("cancelled", T0 - HOUR, T0 + HOUR, T0) == "cancelled"
    assert compute_status("ended", T0 - HOUR, T0 + HOUR, T0) == "ended"


def test_compute_status_treats_naive_datetimes_as_utc():
    naive_start = (T0 - HOUR).replace(tzinfo=None)
    naive_end = (T0 + HOUR).replace(tzinfo=None)
    assert compute_status("pending", naive_start, naive_end, T0) == "active"


def test_insert_does_not_activate_auction(make_auction, seller):
    # start_time "now" is within the creation grace period
    auction = make_auction(seller, starts_in=timedelta(0))
    assert auction["status"] == "pending"


def test_auction_becomes_active_on_next_write(make_auction, client_for, frozen_clock, seller):
    auction = make_auction(seller)
    frozen_clock.advance(minutes=10)

    # Reading does not move the stored status.
    assert client_for().single("auctions", {"id": auction["id"]})["status"] == "pending"

    rows = client_for(seller).update("auctions", {"title": "Vintage camera (boxed)"}, {"id": auction["id"]})
    assert rows[0]["status"] == "active"


def test_active_auction_ends_on_first_write_after_end_time(active_auction, client_for, frozen_clock, seller):
    frozen_clock.advance(days=2)
    rows = client_for(seller).update("auctions", {"description": "Closing"}, {"id": active_auction["id"]})
    assert rows[0]["status"] == "ended"


def test_pending_auction_past_end_time_stays_pending(make_auction, client_for, frozen_clock, seller):
    auction = make_auction(seller, duration=timedelta(hours=1))
    frozen_clock.advance(hours=3)
    rows = client_for(seller).update("auctions", {"description": "Too late"}, {"id": auction["id"]})
    assert rows[0]["status"] == "pending"


def test_cancelled_auction_is_not_reactivated(make_auction, client_for, frozen_clock, seller):
    auction = make_auction(seller)
    client_for(seller).update("auctions", {"status": "cancelled"}, {"id": auction["id"]})
    frozen_clock.advance(minutes=10)
    rows = client_for(seller).update("auctions", {"description": "Still cancelled"}, {"id": auction["id"]})
    assert rows[0]["status"] == "cancelled"


def test_updated_at_is_touched_on_update(client_for, frozen_clock, seller):
    before = client_for(seller).single("profiles", {"user_id": seller})
    later = frozen_clock.advance(minutes=30)
    rows = client_for(seller).update("profiles", {"avatar_url": "https://img.example.com/sam.png"}, {"user_id": seller})

    assert clock.as_utc(rows[0]["updated_at"]) == later
    assert clock.as_utc(rows[0]["created_at"]) == clock.as_utc(before["created_at"])


def test_new_identity_gets_exactly_one_profile(db, make_user):
    user_id = make_user("new@example.com", "Nia New")

    profiles = db.query(Profile).filter(Profile.user_id == user_id).all()
    assert len(profiles) == 1
    assert profiles[0].email == "new@example.com"
    assert profiles[0].full_name == "Nia New"


def test_profile_full_name_is_optional(db, make_user):
    user_id = make_user("anon-name@example.com")
    profile = db.query(Profile).filter(Profile.user_id == user_id).one()
    assert profile.full_name is None


def test_profile_provisioned_for_identity_added_directly(db):
    user = User(email="direct@example.com", hashed_password="x", full_name="Dee Direct")
    db.add(user)
    db.commit()

    assert db.query(Profile).count() == 1
    assert db.query(Profile).one().user_id == user.id


def test_duplicate_profile_insert_propagates_without_retry(db):
    db.add(Profile(user_id="user-dup", email="dup@example.com", full_name="Existing"))
    db.commit()

    db.add(User(id="user-dup", email="dup@example.com", hashed_password="x"))
    with pytest.raises(IntegrityError):
        db.commit()
    db.rollback()

    profiles = db.query(Profile).filter(Profile.user_id == "user-dup").all()
    assert [p.full_name for p in profiles] == ["Existing"]
    assert db.query(User).count() == 0
