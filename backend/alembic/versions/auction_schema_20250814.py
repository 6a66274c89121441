"""Auction storefront schema, row-level policies, triggers and realtime publication

Revision ID: auction_schema_20250814
Revises:
Create Date: 2025-08-14

Creates users (identity), profiles, auctions, bids, notifications and
transactions. On PostgreSQL it additionally:

- enables row level security with one policy per table/operation;
- installs update_updated_at_column(), handle_new_user() and
  update_auction_status() with their triggers;
- sets REPLICA IDENTITY FULL and adds all five public tables to the
  supabase_realtime publication (created when missing).

The ORM events in auction_house.models_sqlalchemy.triggers implement the
same lifecycle rules for non-Postgres databases.
"""
from __future__ import annotations

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


# revision identifiers, used by Alembic.
revision: str = "auction_schema_20250814"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


PUBLIC_TABLES = ("profiles", "auctions", "bids", "notifications", "transactions")

POLICIES = (
    ("profiles", "Users can view all profiles", "SELECT", "USING (true)"),
    ("profiles", "Users can update their own profile", "UPDATE", "USING (auth.uid()::text = user_id)"),
    ("profiles", "Users can insert their own profile", "INSERT", "WITH CHECK (auth.uid()::text = user_id)"),
    ("auctions", "Anyone can view active auctions", "SELECT", "USING (true)"),
    ("auctions", "Sellers can create auctions", "INSERT", "WITH CHECK (auth.uid()::text = seller_id)"),
    ("auctions", "Sellers can update their own auctions", "UPDATE", "USING (auth.uid()::text = seller_id)"),
    ("bids", "Anyone can view bids for auctions", "SELECT", "USING (true)"),
    ("bids", "Authenticated users can place bids", "INSERT", "WITH CHECK (auth.uid()::text = bidder_id)"),
    ("notifications", "Users can view their own notifications", "SELECT", "USING (auth.uid()::text = user_id)"),
    ("notifications", "Users can update their own notifications", "UPDATE", "USING (auth.uid()::text = user_id)"),
    ("notifications", "System can create notifications", "INSERT", "WITH CHECK (true)"),
    (
        "transactions",
        "Users can view transactions they're involved in",
        "SELECT",
        "USING (auth.uid()::text = seller_id OR auth.uid()::text = buyer_id)",
    ),
    ("transactions", "System can create transactions", "INSERT", "WITH CHECK (true)"),
    ("transactions", "Sellers can update transactions", "UPDATE", "USING (auth.uid()::text = seller_id)"),
)


def _timestamps():
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    ]


def _create_tables() -> None:
    op.create_table(
        "users",
        sa.Column("id", sa.String(length=36), primary_key=True, nullable=False),
        sa.Column("email", sa.String(length=255), nullable=False, unique=True),
        sa.Column("hashed_password", sa.String(length=255), nullable=False),
        sa.Column("full_name", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )
    op.create_index("ix_users_email", "users", ["email"])

    op.create_table(
        "profiles",
        sa.Column("id", sa.String(length=36), primary_key=True, nullable=False),
        sa.Column("user_id", sa.String(length=36), nullable=False, unique=True),
        sa.Column("email", sa.Text(), nullable=False),
        sa.Column("full_name", sa.Text(), nullable=True),
        sa.Column("avatar_url", sa.Text(), nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"], name="fk_profiles_user", ondelete="CASCADE"),
    )

    op.create_table(
        "auctions",
        sa.Column("id", sa.String(length=36), primary_key=True, nullable=False),
        sa.Column("seller_id", sa.String(length=36), nullable=False),
        sa.Column("title", sa.Text(), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("starting_price", sa.Numeric(10, 2), nullable=False),
        sa.Column("bid_increment", sa.Numeric(10, 2), nullable=False, server_default="1.00"),
        sa.Column("current_highest_bid", sa.Numeric(10, 2), nullable=True),
        sa.Column("highest_bidder_id", sa.String(length=36), nullable=True),
        sa.Column("start_time", sa.DateTime(timezone=True), nullable=False),
        sa.Column("end_time", sa.DateTime(timezone=True), nullable=False),
        sa.Column("status", sa.String(length=16), nullable=False, server_default="pending"),
        sa.Column("image_url", sa.Text(), nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(["seller_id"], ["profiles.user_id"], name="fk_auctions_seller", ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["highest_bidder_id"], ["profiles.user_id"], name="fk_auctions_highest_bidder"),
        sa.CheckConstraint(
            "status IN ('pending', 'active', 'ended', 'cancelled')", name="auctions_status_check"
        ),
    )
    op.create_index("ix_auctions_seller_id", "auctions", ["seller_id"])
    op.create_index("idx_auctions_status", "auctions", ["status"])
    op.create_index("idx_auctions_created_at", "auctions", ["created_at"])

    op.create_table(
        "bids",
        sa.Column("id", sa.String(length=36), primary_key=True, nullable=False),
        sa.Column("auction_id", sa.String(length=36), nullable=False),
        sa.Column("bidder_id", sa.String(length=36), nullable=False),
        sa.Column("amount", sa.Numeric(10, 2), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.ForeignKeyConstraint(["auction_id"], ["auctions.id"], name="fk_bids_auction", ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["bidder_id"], ["profiles.user_id"], name="fk_bids_bidder", ondelete="CASCADE"),
    )
    op.create_index("ix_bids_auction_id", "bids", ["auction_id"])
    op.create_index("ix_bids_bidder_id", "bids", ["bidder_id"])

    op.create_table(
        "notifications",
        sa.Column("id", sa.String(length=36), primary_key=True, nullable=False),
        sa.Column("user_id", sa.String(length=36), nullable=False),
        sa.Column("auction_id", sa.String(length=36), nullable=True),
        sa.Column("type", sa.String(length=32), nullable=False),
        sa.Column("title", sa.Text(), nullable=False),
        sa.Column("message", sa.Text(), nullable=False),
        sa.Column("read", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("data", sa.JSON().with_variant(postgresql.JSONB(), "postgresql"), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.ForeignKeyConstraint(["user_id"], ["profiles.user_id"], name="fk_notifications_user", ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["auction_id"], ["auctions.id"], name="fk_notifications_auction", ondelete="CASCADE"),
        sa.CheckConstraint(
            "type IN ('new_bid', 'outbid', 'auction_ended', 'bid_accepted', 'bid_rejected', 'counter_offer')",
            name="notifications_type_check",
        ),
    )
    op.create_index("ix_notifications_user_id", "notifications", ["user_id"])
    op.create_index("idx_notifications_user_read", "notifications", ["user_id", "read"])

    op.create_table(
        "transactions",
        sa.Column("id", sa.String(length=36), primary_key=True, nullable=False),
        sa.Column("auction_id", sa.String(length=36), nullable=False),
        sa.Column("seller_id", sa.String(length=36), nullable=False),
        sa.Column("buyer_id", sa.String(length=36), nullable=False),
        sa.Column("final_amount", sa.Numeric(10, 2), nullable=False),
        sa.Column("status", sa.String(length=16), nullable=False, server_default="pending"),
        sa.Column("counter_offer_amount", sa.Numeric(10, 2), nullable=True),
        sa.Column("counter_offer_message", sa.Text(), nullable=True),
        sa.Column("invoice_url", sa.Text(), nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(["auction_id"], ["auctions.id"], name="fk_transactions_auction", ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["seller_id"], ["profiles.user_id"], name="fk_transactions_seller", ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["buyer_id"], ["profiles.user_id"], name="fk_transactions_buyer", ondelete="CASCADE"),
        sa.CheckConstraint(
            "status IN ('pending', 'accepted', 'rejected', 'completed')", name="transactions_status_check"
        ),
    )
    op.create_index("ix_transactions_auction_id", "transactions", ["auction_id"])
    op.create_index("ix_transactions_seller_id", "transactions", ["seller_id"])
    op.create_index("ix_transactions_buyer_id", "transactions", ["buyer_id"])


def _ensure_auth_uid() -> None:
    # Supabase ships auth.uid(); plain Postgres gets the same definition
    # reading the JWT subject from the request settings.
    op.execute(
        sa.text(
            """
            DO $$
            BEGIN
                CREATE SCHEMA IF NOT EXISTS auth;
                IF NOT EXISTS (
                    SELECT 1
                    FROM pg_proc p
                    JOIN pg_namespace n ON n.oid = p.pronamespace
                    WHERE n.nspname = 'auth' AND p.proname = 'uid'
                ) THEN
                    CREATE FUNCTION auth.uid() RETURNS uuid
                    LANGUAGE sql STABLE
                    AS 'SELECT nullif(current_setting(''request.jwt.claim.sub'', true), '''')::uuid';
                END IF;
            END$$;
            """
        )
    )


def _create_policies() -> None:
    for table in PUBLIC_TABLES:
        op.execute(sa.text(f"ALTER TABLE public.{table} ENABLE ROW LEVEL SECURITY"))
    for table, name, command, clause in POLICIES:
        op.execute(sa.text(f'CREATE POLICY "{name}" ON public.{table} FOR {command} {clause}'))


def _create_triggers() -> None:
    op.execute(
        sa.text(
            """
            CREATE OR REPLACE FUNCTION public.update_updated_at_column()
            RETURNS TRIGGER AS $$
            BEGIN
                NEW.updated_at = now();
                RETURN NEW;
            END;
            $$ LANGUAGE plpgsql;
            """
        )
    )
    for table in ("profiles", "auctions", "transactions"):
        op.execute(
            sa.text(
                f"""
                CREATE TRIGGER update_{table}_updated_at
                BEFORE UPDATE ON public.{table}
                FOR EACH ROW
                EXECUTE FUNCTION public.update_updated_at_column();
                """
            )
        )

    op.execute(
        sa.text(
            """
            CREATE OR REPLACE FUNCTION public.handle_new_user()
            RETURNS TRIGGER AS $$
            BEGIN
                INSERT INTO public.profiles (id, user_id, email, full_name)
                VALUES (gen_random_uuid()::text, NEW.id, NEW.email, NEW.full_name);
                RETURN NEW;
            END;
            $$ LANGUAGE plpgsql SECURITY DEFINER;
            """
        )
    )
    op.execute(
        sa.text(
            """
            CREATE TRIGGER on_user_created
            AFTER INSERT ON public.users
            FOR EACH ROW
            EXECUTE FUNCTION public.handle_new_user();
            """
        )
    )

    op.execute(
        sa.text(
            """
            CREATE OR REPLACE FUNCTION public.update_auction_status()
            RETURNS TRIGGER AS $$
            BEGIN
                IF NEW.start_time <= now() AND NEW.end_time > now() AND NEW.status = 'pending' THEN
                    NEW.status = 'active';
                ELSIF NEW.end_time <= now() AND NEW.status = 'active' THEN
                    NEW.status = 'ended';
                END IF;
                RETURN NEW;
            END;
            $$ LANGUAGE plpgsql;
            """
        )
    )
    op.execute(
        sa.text(
            """
            CREATE TRIGGER update_auction_status_trigger
            BEFORE UPDATE ON public.auctions
            FOR EACH ROW
            EXECUTE FUNCTION public.update_auction_status();
            """
        )
    )


def _create_publication() -> None:
    op.execute(
        sa.text(
            """
            DO $$
            BEGIN
                IF NOT EXISTS (SELECT 1 FROM pg_publication WHERE pubname = 'supabase_realtime') THEN
                    CREATE PUBLICATION supabase_realtime;
                END IF;
            END$$;
            """
        )
    )
    for table in PUBLIC_TABLES:
        op.execute(sa.text(f"ALTER TABLE public.{table} REPLICA IDENTITY FULL"))
        op.execute(sa.text(f"ALTER PUBLICATION supabase_realtime ADD TABLE public.{table}"))


def upgrade() -> None:
    _create_tables()

    if op.get_bind().dialect.name != "postgresql":
        return

    _ensure_auth_uid()
    _create_policies()
    _create_triggers()
    _create_publication()


def downgrade() -> None:
    """Drop the storefront tables and their Postgres artifacts (best-effort)."""

    if op.get_bind().dialect.name == "postgresql":
        for table in PUBLIC_TABLES:
            op.execute(
                sa.text(
                    f"""
                    DO $$
                    BEGIN
                        IF EXISTS (
                            SELECT 1 FROM pg_publication_tables
                            WHERE pubname = 'supabase_realtime' AND schemaname = 'public' AND tablename = '{table}'
                        ) THEN
                            ALTER PUBLICATION supabase_realtime DROP TABLE public.{table};
                        END IF;
                    END$$;
                    """
                )
            )
        op.execute(sa.text("DROP TRIGGER IF EXISTS on_user_created ON public.users"))
        op.execute(sa.text("DROP TRIGGER IF EXISTS update_auction_status_trigger ON public.auctions"))
        for table in ("profiles", "auctions", "transactions"):
            op.execute(sa.text(f"DROP TRIGGER IF EXISTS update_{table}_updated_at ON public.{table}"))
        op.execute(sa.text("DROP FUNCTION IF EXISTS public.update_auction_status()"))
        op.execute(sa.text("DROP FUNCTION IF EXISTS public.handle_new_user()"))
        op.execute(sa.text("DROP FUNCTION IF EXISTS public.update_updated_at_column()"))

    for table in ("transactions", "notifications", "bids", "auctions", "profiles", "users"):
        op.drop_table(table)
