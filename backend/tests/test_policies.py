from decimal import Decimal

import pytest

from auction_house.models.auction import NotificationCreate, TransactionCreate, TransactionUpdate
from auction_house.models_sqlalchemy.models import NotificationType
from auction_house.services import policies, settlement
from auction_house.services.data_client import DataAccessError, DataClient, RowNotFound
from auction_house.services.policies import Caller, PolicyViolation


def test_service_role_bypasses_every_policy():
    caller = Caller.service()
    assert policies.is_allowed("auctions", "delete", caller, {})
    assert policies.is_allowed("notifications", "select", caller, {"user_id": "someone"})


def test_missing_policy_means_denied():
    caller = Caller.authenticated("u1")
    assert not policies.is_allowed("bids", "update", caller, {"bidder_id": "u1"})
    assert not policies.is_allowed("auctions", "delete", caller, {"seller_id": "u1"})


def test_anonymous_caller_matches_no_ownership_policy():
    caller = Caller.anonymous()
    assert not caller.is_authenticated
    assert not policies.is_allowed("bids", "insert", caller, {"bidder_id": None})
    assert policies.is_allowed("bids", "select", caller, {"bidder_id": "u1"})


def test_policy_violation_messages():
    assert str(PolicyViolation("bids", "insert")) == 'new row violates row-level security policy for table "bids"'
    assert "rejects UPDATE" in str(PolicyViolation("auctions", "update"))


def test_anonymous_bid_insert_is_rejected(active_auction, client_for):
    with pytest.raises(PolicyViolation):
        client_for().insert("bids", {"auction_id": active_auction["id"], "bidder_id": None, "amount": "11.00"})


def test_bid_for_someone_else_is_rejected(active_auction, client_for, bidder, other_bidder):
    with pytest.raises(PolicyViolation) as excinfo:
        client_for(bidder).insert(
            "bids", {"auction_id": active_auction["id"], "bidder_id": other_bidder, "amount": "11.00"}
        )
    assert excinfo.value.table == "bids"
    assert client_for().select("bids") == []


def test_data_layer_accepts_bid_below_minimum(active_auction, client_for, bidder):
    # The minimum increment is a client-side rule only.
    row = client_for(bidder).insert(
        "bids", {"auction_id": active_auction["id"], "bidder_id": bidder, "amount": "0.01"}
    )
    assert row["amount"] == Decimal("0.01")


def test_cannot_create_auction_for_another_seller(client_for, seller, bidder):
    with pytest.raises(PolicyViolation):
        client_for(bidder).insert(
            "auctions",
            {
                "seller_id": seller,
                "title": "Not mine",
                "starting_price": "5.00",
                "start_time": "2025-08-21T00:00:00+00:00",
                "end_time": "2025-08-22T00:00:00+00:00",
            },
        )


def test_non_seller_update_is_rejected_and_row_unchanged(active_auction, client_for, bidder):
    with pytest.raises(PolicyViolation):
        client_for(bidder).update("auctions", {"title": "Hijacked"}, {"id": active_auction["id"]})
    assert client_for().single("auctions", {"id": active_auction["id"]})["title"] == "Vintage camera"


def test_seller_can_rewrite_highest_bid_on_own_auction(active_auction, client_for, seller):
    rows = client_for(seller).update("auctions", {"current_highest_bid": "999.00"}, {"id": active_auction["id"]})
    assert rows[0]["current_highest_bid"] == Decimal("999.00")


def test_update_cannot_hand_row_to_another_owner(active_auction, client_for, seller, bidder):
    with pytest.raises(PolicyViolation):
        client_for(seller).update("auctions", {"seller_id": bidder}, {"id": active_auction["id"]})
    assert client_for().single("auctions", {"id": active_auction["id"]})["seller_id"] == seller


def test_no_delete_policy_so_deletes_are_denied(active_auction, client_for, seller):
    with pytest.raises(PolicyViolation):
        client_for(seller).delete("auctions", {"id": active_auction["id"]})

    deleted = client_for(seller).as_service().delete("auctions", {"id": active_auction["id"]})
    assert [row["id"] for row in deleted] == [active_auction["id"]]
    with pytest.raises(RowNotFound):
        client_for().single("auctions", {"id": active_auction["id"]})


def test_profiles_visible_to_everyone_but_only_owner_updates(client_for, seller, bidder):
    assert len(client_for().select("profiles")) == 2
    with pytest.raises(PolicyViolation):
        client_for(bidder).update("profiles", {"full_name": "Impostor"}, {"user_id": seller})
    rows = client_for(seller).update("profiles", {"full_name": "Samantha Seller"}, {"user_id": seller})
    assert rows[0]["full_name"] == "Samantha Seller"


def test_notifications_are_private_to_recipient(client_for, seller, bidder):
    # Any caller may create one, including anonymous.
    settlement.notify(
        client_for(),
        NotificationCreate(user_id=seller, type=NotificationType.new_bid, title="New bid", message="You got a bid"),
    )

    assert client_for(bidder).select("notifications") == []
    assert client_for().select("notifications") == []
    mine = settlement.list_notifications(client_for(seller))
    assert len(mine) == 1
    assert mine[0]["read"] is False

    # Invisible rows are skipped, not rejected.
    assert settlement.mark_notification_read(client_for(bidder), mine[0]["id"]) is None
    row = settlement.mark_notification_read(client_for(seller), mine[0]["id"])
    assert row["read"] is True
    assert settlement.list_notifications(client_for(seller), unread_only=True) == []


def test_transactions_visible_to_parties_and_updated_by_seller(active_auction, client_for, seller, bidder, other_bidder):
    tx = settlement.create_transaction(
        client_for(),
        TransactionCreate(
            auction_id=active_auction["id"], seller_id=seller, buyer_id=bidder, final_amount="25.00"
        ),
    )
    assert tx["status"] == "pending"

    assert len(settlement.list_transactions(client_for(seller))) == 1
    assert len(settlement.list_transactions(client_for(bidder))) == 1
    assert settlement.list_transactions(client_for(other_bidder)) == []

    with pytest.raises(PolicyViolation):
        settlement.update_transaction(client_for(bidder), tx["id"], TransactionUpdate(status="accepted"))

    row = settlement.update_transaction(
        client_for(seller),
        tx["id"],
        TransactionUpdate(status="rejected", counter_offer_amount="30.00", counter_offer_message="Meet me at 30?"),
    )
    assert row["status"] == "rejected"
    assert row["counter_offer_amount"] == Decimal("30.00")


def test_unknown_table_and_column_are_rejected(db):
    client = DataClient(db)
    with pytest.raises(DataAccessError):
        client.select("users")
    with pytest.raises(DataAccessError):
        client.select("auctions", columns="id,nope")
    with pytest.raises(DataAccessError):
        client.select("auctions", filters={"nope": "x"})


def test_empty_update_is_rejected(client_for, seller):
    with pytest.raises(DataAccessError):
        client_for(seller).update("profiles", {}, {"user_id": seller})


def test_negative_limit_is_rejected(client_for, seller):
    with pytest.raises(DataAccessError):
        client_for().select("profiles", limit=-1)
    assert client_for().select("profiles", limit=0) == []
