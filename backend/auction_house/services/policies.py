"""Row-level access policies for the public tables.

Each table maps an operation (select / insert / update / delete) to a named
predicate over the caller's identity and a row. The names and predicates
match the ``CREATE POLICY`` statements installed by the Alembic migration.
An operation with no policy is denied, as it is for a Postgres table with
RLS enabled. The ``service_role`` caller bypasses every policy.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable, Dict, Mapping, NamedTuple, Optional

from auction_house.utils.logger import logger

ANON = "anon"
AUTHENTICATED = "authenticated"
SERVICE_ROLE = "service_role"


@dataclass(frozen=True)
class Caller:
    """Identity a data call is made on behalf of."""

    user_id: Optional[str] = None
    role: str = ANON

    @classmethod
    def anonymous(cls) -> "Caller":
        return cls()

    @classmethod
    def authenticated(cls, user_id: str) -> "Caller":
        return cls(user_id=user_id, role=AUTHENTICATED)

    @classmethod
    def service(cls) -> "Caller":
        return cls(role=SERVICE_ROLE)

    @property
    def is_authenticated(self) -> bool:
        return self.role == AUTHENTICATED and self.user_id is not None

    @property
    def bypasses_rls(self) -> bool:
        return self.role == SERVICE_ROLE


class PolicyViolation(Exception):
    """A write was rejected by a row-level policy."""

    def __init__(self, table: str, operation: str):
        self.table = table
        self.operation = operation
        if operation == "insert":
            message = f'new row violates row-level security policy for table "{table}"'
        else:
            message = f'permission denied: row-level security policy for table "{table}" rejects {operation.upper()}'
        super().__init__(message)


Predicate = Callable[[Optional[str], Mapping[str, Any]], bool]


class Policy(NamedTuple):
    name: str
    predicate: Predicate


def _anyone(uid: Optional[str], row: Mapping[str, Any]) -> bool:
    return True


def _owned_by(*columns: str) -> Predicate:
    def predicate(uid: Optional[str], row: Mapping[str, Any]) -> bool:
        if uid is None:
            return False
        return any(row.get(column) == uid for column in columns)

    return predicate


POLICIES: Dict[str, Dict[str, Policy]] = {
    "profiles": {
        "select": Policy("Users can view all profiles", _anyone),
        "update": Policy("Users can update their own profile", _owned_by("user_id")),
        "insert": Policy("Users can insert their own profile", _owned_by("user_id")),
    },
    "auctions": {
        "select": Policy("Anyone can view active auctions", _anyone),
        "insert": Policy("Sellers can create auctions", _owned_by("seller_id")),
        # No column restriction: a seller may rewrite any field, including
        # current_highest_bid on their own listing.
        "update": Policy("Sellers can update their own auctions", _owned_by("seller_id")),
    },
    "bids": {
        "select": Policy("Anyone can view bids for auctions", _anyone),
        # Only identity is checked here; amount, self-bidding and auction
        # status are client-side rules.
        "insert": Policy("Authenticated users can place bids", _owned_by("bidder_id")),
    },
    "notifications": {
        "select": Policy("Users can view their own notifications", _owned_by("user_id")),
        "update": Policy("Users can update their own notifications", _owned_by("user_id")),
        "insert": Policy("System can create notifications", _anyone),
    },
    "transactions": {
        "select": Policy("Users can view transactions they're involved in", _owned_by("seller_id", "buyer_id")),
        "insert": Policy("System can create transactions", _anyone),
        "update": Policy("Sellers can update transactions", _owned_by("seller_id")),
    },
}


def is_allowed(table: str, operation: str, caller: Caller, row: Mapping[str, Any]) -> bool:
    if caller.bypasses_rls:
        return True
    policy = POLICIES.get(table, {}).get(operation)
    if policy is None:
        return False
    return bool(policy.predicate(caller.user_id, row))


def can_select(table: str, caller: Caller, row: Mapping[str, Any]) -> bool:
    return is_allowed(table, "select", caller, row)


def enforce(table: str, operation: str, caller: Caller, row: Mapping[str, Any]) -> None:
    """Raise PolicyViolation unless ``caller`` may perform ``operation`` on ``row``."""

    if is_allowed(table, operation, caller, row):
        return
    policy = POLICIES.get(table, {}).get(operation)
    logger.warning(
        "Policy rejected %s on %s for caller=%s role=%s (policy=%s)",
        operation,
        table,
        caller.user_id,
        caller.role,
        policy.name if policy else "<none>",
    )
    raise PolicyViolation(table, operation)
