import asyncio
import json
from decimal import Decimal

import pytest

from auction_house.config import settings
from auction_house.models.auction import NotificationCreate
from auction_house.models_sqlalchemy.models import Bid, NotificationType
from auction_house.routers.realtime import change_stream, format_sse, stream_changes
from auction_house.services import auction_actions, settlement
from auction_house.services.auth import create_access_token
from auction_house.services.policies import Caller
from auction_house.services.realtime import ChangeEvent, ChangeFeed, change_feed, parse_filter


@pytest.fixture
def collect():
    """Subscribe to the global feed with a list-appending callback."""

    subs = []

    def _collect(table, event="*", filter=None, caller=None):
        events = []
        subs.append(change_feed.subscribe(table, event=event, filter=filter, caller=caller, callback=events.append))
        return events

    yield _collect
    for sub in subs:
        sub.close()


def test_parse_filter():
    assert parse_filter(None) is None
    assert parse_filter("auction_id=eq.abc") == ("auction_id", "abc")
    with pytest.raises(ValueError):
        parse_filter("amount=gt.5")
    with pytest.raises(ValueError):
        parse_filter("auction_id")


def test_subscribe_rejects_unpublished_table_and_bad_event():
    with pytest.raises(ValueError):
        change_feed.subscribe("users")
    with pytest.raises(ValueError):
        change_feed.subscribe("bids", event="TRUNCATE")


def test_bid_insert_filtered_by_auction(make_auction, active_auction, client_for, collect, seller, bidder):
    other = make_auction(seller, title="Other")
    events = collect("bids", event="INSERT", filter=f"auction_id=eq.{active_auction['id']}")

    auction_actions.place_bid(client_for(bidder), active_auction["id"], "11.00")

    assert len(events) == 1
    assert events[0].type == "INSERT"
    assert events[0].record["amount"] == Decimal("11.00")
    assert events[0].old_record is None

    # A bid on another auction is filtered out (written straight through the
    # data client since that auction is still pending).
    client_for(bidder).insert("bids", {"auction_id": other["id"], "bidder_id": bidder, "amount": "20.00"})
    assert len(events) == 1


def test_auction_update_carries_old_and_new_row(active_auction, client_for, collect, bidder):
    events = collect("auctions", event="UPDATE", filter=f"id=eq.{active_auction['id']}")

    auction_actions.place_bid(client_for(bidder), active_auction["id"], "11.00")

    assert len(events) == 1
    assert events[0].old_record["current_highest_bid"] is None
    assert events[0].record["current_highest_bid"] == Decimal("11.00")
    assert events[0].record["highest_bidder_id"] == bidder


def test_events_only_for_rows_the_subscriber_can_select(collect, client_for, seller, bidder):
    seller_events = collect("notifications", caller=Caller.authenticated(seller))
    bidder_events = collect("notifications", caller=Caller.authenticated(bidder))
    anon_events = collect("notifications")

    settlement.notify(
        client_for(),
        NotificationCreate(user_id=seller, type=NotificationType.new_bid, title="New bid", message="11.00 on camera"),
    )

    assert len(seller_events) == 1
    assert bidder_events == []
    assert anon_events == []


def test_signup_publishes_profile_insert(collect, make_user):
    events = collect("profiles", event="INSERT")
    user_id = make_user("late@example.com", "Lee Late")

    assert len(events) == 1
    assert events[0].record["user_id"] == user_id


def test_delete_event_carries_old_row(active_auction, client_for, collect, seller):
    events = collect("auctions", event="DELETE")
    client_for(seller).as_service().delete("auctions", {"id": active_auction["id"]})

    assert len(events) == 1
    assert events[0].old_record["id"] == active_auction["id"]
    assert events[0].to_payload()["new"] == {}


def test_rolled_back_changes_are_not_published(db, active_auction, collect, bidder):
    events = collect("bids")

    db.add(Bid(auction_id=active_auction["id"], bidder_id=bidder, amount=Decimal("50.00")))
    db.flush()
    db.rollback()

    assert events == []
    assert db.query(Bid).count() == 0


def test_closed_subscription_receives_nothing(active_auction, client_for, bidder):
    events = []
    sub = change_feed.subscribe("bids", callback=events.append)
    before = change_feed.subscription_count
    sub.close()

    assert change_feed.subscription_count == before - 1
    auction_actions.place_bid(client_for(bidder), active_auction["id"], "11.00")
    assert events == []


def test_queue_drops_oldest_when_full():
    feed = ChangeFeed(tables=["bids"], queue_size=2)
    sub = feed.subscribe("bids")
    for n in range(3):
        feed.publish([ChangeEvent("bids", "INSERT", {"id": str(n)})])

    assert sub.queue.qsize() == 2
    assert sub.queue.get_nowait().record["id"] == "1"
    assert sub.queue.get_nowait().record["id"] == "2"


def test_unpublished_table_events_are_ignored():
    feed = ChangeFeed(tables=["bids"])
    feed.subscribe("bids")
    assert feed.publish([ChangeEvent("auctions", "INSERT", {"id": "a1"})]) == 0


def test_publish_from_worker_thread_reaches_async_subscriber():
    feed = ChangeFeed(tables=["auctions"])
    change = ChangeEvent("auctions", "UPDATE", {"id": "a1", "status": "active"}, {"id": "a1", "status": "pending"})

    async def scenario():
        sub = feed.subscribe("auctions", event="UPDATE")
        loop = asyncio.get_running_loop()
        delivered = await loop.run_in_executor(None, feed.publish, [change])
        received = await asyncio.wait_for(sub.get(), timeout=1)
        sub.close()
        return delivered, received

    delivered, received = asyncio.run(scenario())
    assert delivered == 1
    assert received is change


def test_format_sse():
    change = ChangeEvent("bids", "INSERT", {"id": "b1", "amount": Decimal("11.00")})
    frame = format_sse(change)

    assert frame.startswith("event: INSERT\ndata: ")
    assert frame.endswith("\n\n")
    payload = json.loads(frame.split("data: ", 1)[1])
    assert payload["table"] == "bids"
    assert payload["eventType"] == "INSERT"
    assert payload["new"]["amount"] == 11.0
    assert payload["old"] == {}


def test_boolean_filter_matches_typed_column(collect, client_for, seller):
    unread = collect("notifications", event="INSERT", filter="read=eq.false", caller=Caller.authenticated(seller))
    read = collect("notifications", event="INSERT", filter="read=eq.true", caller=Caller.authenticated(seller))

    settlement.notify(
        client_for(),
        NotificationCreate(user_id=seller, type=NotificationType.outbid, title="Outbid", message="Someone bid higher"),
    )

    assert len(unread) == 1
    assert read == []


def test_numeric_filter_matches_regardless_of_scale(active_auction, client_for, collect, bidder):
    at_eleven = collect("auctions", event="UPDATE", filter="current_highest_bid=eq.11")
    at_twelve = collect("auctions", event="UPDATE", filter="current_highest_bid=eq.12.00")

    auction_actions.place_bid(client_for(bidder), active_auction["id"], "11.00")

    assert len(at_eleven) == 1
    assert at_twelve == []


def test_subscribe_rejects_unknown_filter_column_and_bad_value():
    with pytest.raises(ValueError):
        change_feed.subscribe("notifications", filter="colour=eq.red")
    with pytest.raises(ValueError):
        change_feed.subscribe("notifications", filter="read=eq.maybe")


class _StreamRequest:
    """Stands in for the Starlette request the SSE generator polls."""

    def __init__(self):
        self.disconnected = False

    async def is_disconnected(self):
        return self.disconnected


def test_sse_stream_sends_frames_and_closes_on_disconnect(client_for, seller, bidder):
    async def scenario():
        request = _StreamRequest()
        before = change_feed.subscription_count
        resp = await stream_changes(
            "notifications",
            request,
            event="INSERT",
            filter=f"user_id=eq.{seller}",
            credentials=None,
            token=create_access_token(data={"sub": seller}),
        )
        frames = resp.body_iterator
        subscribed = await frames.__anext__()
        open_count = change_feed.subscription_count

        settlement.notify(
            client_for(bidder),
            NotificationCreate(user_id=seller, type=NotificationType.new_bid, title="New bid", message="11.00"),
        )
        change = await asyncio.wait_for(frames.__anext__(), timeout=1)

        request.disconnected = True
        with pytest.raises(StopAsyncIteration):
            await frames.__anext__()
        return resp, subscribed, change, before, open_count

    resp, subscribed, change, before, open_count = asyncio.run(scenario())

    assert resp.media_type == "text/event-stream"
    assert subscribed.startswith("event: subscribed\ndata: ")
    assert json.loads(subscribed.split("data: ", 1)[1])["table"] == "notifications"
    assert change.startswith("event: INSERT\ndata: ")
    assert json.loads(change.split("data: ", 1)[1])["new"]["user_id"] == seller
    assert open_count == before + 1
    assert change_feed.subscription_count == before


def test_sse_stream_sends_keep_alive_when_idle(monkeypatch):
    monkeypatch.setattr(settings, "REALTIME_KEEPALIVE_SECONDS", 0.01)
    feed = ChangeFeed(tables=["bids"])

    async def scenario():
        request = _StreamRequest()
        sub = feed.subscribe("bids")
        frames = change_stream(request, sub)
        await frames.__anext__()
        keep_alive = await frames.__anext__()
        await frames.aclose()
        return keep_alive, sub

    keep_alive, sub = asyncio.run(scenario())
    assert keep_alive == ": keep-alive\n\n"
    assert sub.closed
    assert feed.subscription_count == 0
