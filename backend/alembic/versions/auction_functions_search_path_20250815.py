"""Pin search_path on trigger functions

Revision ID: auction_functions_search_path_20250815
Revises: auction_schema_20250814
Create Date: 2025-08-15

Recreates the three lifecycle functions as SECURITY DEFINER with an empty
search_path and fully-qualified names, so a caller cannot shadow public
objects through their own schema. Behaviour is unchanged.
"""
from __future__ import annotations

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = "auction_functions_search_path_20250815"
down_revision: Union[str, Sequence[str], None] = "auction_schema_20250814"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    if op.get_bind().dialect.name != "postgresql":
        return

    op.execute(
        sa.text(
            """
            CREATE OR REPLACE FUNCTION public.update_updated_at_column()
            RETURNS TRIGGER
            LANGUAGE plpgsql
            SECURITY DEFINER
            SET search_path = ''
            AS $$
            BEGIN
                NEW.updated_at = now();
                RETURN NEW;
            END;
            $$;
            """
        )
    )
    op.execute(
        sa.text(
            """
            CREATE OR REPLACE FUNCTION public.handle_new_user()
            RETURNS TRIGGER
            LANGUAGE plpgsql
            SECURITY DEFINER
            SET search_path = ''
            AS $$
            BEGIN
                INSERT INTO public.profiles (id, user_id, email, full_name)
                VALUES (pg_catalog.gen_random_uuid()::text, NEW.id, NEW.email, NEW.full_name);
                RETURN NEW;
            END;
            $$;
            """
        )
    )
    op.execute(
        sa.text(
            """
            CREATE OR REPLACE FUNCTION public.update_auction_status()
            RETURNS TRIGGER
            LANGUAGE plpgsql
            SECURITY DEFINER
            SET search_path = ''
            AS $$
            BEGIN
                IF NEW.start_time <= now() AND NEW.end_time > now() AND NEW.status = 'pending' THEN
                    NEW.status = 'active';
                ELSIF NEW.end_time <= now() AND NEW.status = 'active' THEN
                    NEW.status = 'ended';
                END IF;
                RETURN NEW;
            END;
            $$;
            """
        )
    )


def downgrade() -> None:
    if op.get_bind().dialect.name != "postgresql":
        return

    # Drop the pinned search_path; function bodies stay identical.
    for fn in ("update_updated_at_column", "handle_new_user", "update_auction_status"):
        op.execute(sa.text(f"ALTER FUNCTION public.{fn}() RESET search_path"))
    op.execute(sa.text("ALTER FUNCTION public.update_updated_at_column() SECURITY INVOKER"))
    op.execute(sa.text("ALTER FUNCTION public.update_auction_status() SECURITY INVOKER"))
