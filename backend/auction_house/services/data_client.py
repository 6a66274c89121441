"""Generic table access on behalf of a caller.

This is the storefront's whole data API: select / insert / update / delete
against the public tables with column projection and equality filters.
Every call evaluates the row-level policies for its caller and commits its
own unit of work, so two calls are never atomic together.
"""
from __future__ import annotations

from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Union

from sqlalchemy import Boolean, DateTime, Numeric, inspect as sa_inspect
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from auction_house.models_sqlalchemy.models import PUBLIC_TABLES, Profile
from auction_house.services import policies
from auction_house.services.policies import Caller
from auction_house.services.realtime import row_image
from auction_house.utils.logger import logger

Columns = Union[str, Sequence[str]]


class DataAccessError(Exception):
    """Malformed request or a database-level rejection (constraint, FK)."""


class RowNotFound(DataAccessError):
    pass


class DataClient:
    def __init__(self, db: Session, caller: Optional[Caller] = None):
        self.db = db
        self.caller = caller or Caller.anonymous()

    def as_service(self) -> "DataClient":
        """Same session, elevated to the service role (policies bypassed)."""

        return DataClient(self.db, Caller.service())

    # Helpers

    def _model(self, table: str):
        model = PUBLIC_TABLES.get(table)
        if model is None:
            raise DataAccessError(f"Unknown table: {table}")
        return model

    def _column_types(self, model) -> Dict[str, Any]:
        return {column.key: column.type for column in sa_inspect(model).columns}

    def _projection(self, model, columns: Columns) -> List[str]:
        known = self._column_types(model)
        if isinstance(columns, str):
            if columns.strip() in ("", "*"):
                return list(known)
            columns = [c.strip() for c in columns.split(",") if c.strip()]
        unknown = [c for c in columns if c not in known]
        if unknown:
            raise DataAccessError(f"Unknown column(s) for {model.__tablename__}: {', '.join(unknown)}")
        return list(columns)

    def _coerce(self, model, values: Mapping[str, Any]) -> Dict[str, Any]:
        types = self._column_types(model)
        coerced: Dict[str, Any] = {}
        for key, value in values.items():
            if key not in types:
                raise DataAccessError(f"Unknown column for {model.__tablename__}: {key}")
            coerced[key] = _coerce_value(key, types[key], value)
        return coerced

    def _query(self, model, filters: Optional[Mapping[str, Any]]):
        q = self.db.query(model)
        for key, value in self._coerce(model, filters or {}).items():
            q = q.filter(getattr(model, key) == value)
        return q

    def _commit(self) -> None:
        try:
            self.db.commit()
        except IntegrityError as exc:
            self.db.rollback()
            logger.warning("Data client write rejected by database: %s", exc.orig)
            raise DataAccessError(str(exc.orig)) from exc
        except SQLAlchemyError:
            self.db.rollback()
            raise

    # Operations

    def select(
        self,
        table: str,
        columns: Columns = "*",
        filters: Optional[Mapping[str, Any]] = None,
        order_by: Optional[str] = None,
        desc: bool = False,
        limit: Optional[int] = None,
        embed_profile: Optional[str] = None,
    ) -> List[Dict[str, Any]]:
        """Return visible rows as dicts.

        ``embed_profile`` names a user-id column; each row then gets a
        ``profiles`` entry with that user's ``full_name`` (or None).
        """

        model = self._model(table)
        if limit is not None and limit < 0:
            raise DataAccessError(f"Invalid limit: {limit}")
        projection = self._projection(model, columns)
        q = self._query(model, filters)
        if order_by:
            if order_by not in self._column_types(model):
                raise DataAccessError(f"Unknown order column for {table}: {order_by}")
            column = getattr(model, order_by)
            q = q.order_by(column.desc() if desc else column.asc())

        rows = [row_image(obj) for obj in q.all()]
        rows = [row for row in rows if policies.can_select(table, self.caller, row)]
        if limit is not None:
            rows = rows[:limit]

        if embed_profile:
            if embed_profile not in self._column_types(model):
                raise DataAccessError(f"Unknown embed column for {table}: {embed_profile}")
            names = self._profile_names(row[embed_profile] for row in rows)
        result = []
        for row in rows:
            out = {key: row[key] for key in projection}
            if embed_profile:
                user_id = row[embed_profile]
                out["profiles"] = {"full_name": names[user_id]} if user_id in names else None
            result.append(out)
        return result

    def _profile_names(self, user_ids: Iterable[Optional[str]]) -> Dict[str, Optional[str]]:
        wanted = {uid for uid in user_ids if uid}
        if not wanted:
            return {}
        profiles = self.db.query(Profile).filter(Profile.user_id.in_(wanted)).all()
        return {
            p.user_id: p.full_name
            for p in profiles
            if policies.can_select("profiles", self.caller, row_image(p))
        }

    def single(self, table: str, filters: Mapping[str, Any], columns: Columns = "*", **kwargs) -> Dict[str, Any]:
        rows = self.select(table, columns=columns, filters=filters, **kwargs)
        if not rows:
            raise RowNotFound(f"No {table} row matches {dict(filters)}")
        return rows[0]

    def insert(self, table: str, values: Mapping[str, Any]) -> Dict[str, Any]:
        model = self._model(table)
        data = self._coerce(model, values)
        policies.enforce(table, "insert", self.caller, data)

        obj = model(**data)
        self.db.add(obj)
        self._commit()
        self.db.refresh(obj)
        row = row_image(obj)
        logger.info("Inserted %s row id=%s (caller=%s)", table, row.get("id"), self.caller.user_id or self.caller.role)
        return row

    def update(self, table: str, values: Mapping[str, Any], filters: Mapping[str, Any]) -> List[Dict[str, Any]]:
        """Update every visible row matching ``filters``.

        Rows the caller cannot see are skipped. A visible row the caller may
        not update (checked on the old row and again on the new one) rejects
        the whole call.
        """

        model = self._model(table)
        data = self._coerce(model, values)
        if not data:
            raise DataAccessError("No values to update")

        targets = [obj for obj in self._query(model, filters).all()
                   if policies.can_select(table, self.caller, row_image(obj))]
        try:
            for obj in targets:
                policies.enforce(table, "update", self.caller, row_image(obj))
                for key, value in data.items():
                    setattr(obj, key, value)
                policies.enforce(table, "update", self.caller, row_image(obj))
        except policies.PolicyViolation:
            self.db.rollback()
            raise

        self._commit()
        rows = []
        for obj in targets:
            self.db.refresh(obj)
            rows.append(row_image(obj))
        logger.info("Updated %d %s row(s) (caller=%s)", len(rows), table, self.caller.user_id or self.caller.role)
        return rows

    def delete(self, table: str, filters: Mapping[str, Any]) -> List[Dict[str, Any]]:
        model = self._model(table)
        targets = [obj for obj in self._query(model, filters).all()
                   if policies.can_select(table, self.caller, row_image(obj))]
        rows = [row_image(obj) for obj in targets]
        for row in rows:
            policies.enforce(table, "delete", self.caller, row)
        for obj in targets:
            self.db.delete(obj)
        self._commit()
        logger.info("Deleted %d %s row(s) (caller=%s)", len(rows), table, self.caller.user_id or self.caller.role)
        return rows


def _coerce_value(key: str, column_type, value: Any) -> Any:
    if value is None:
        return None
    try:
        if isinstance(column_type, DateTime) and isinstance(value, str):
            return datetime.fromisoformat(value.replace("Z", "+00:00"))
        if isinstance(column_type, Numeric) and not isinstance(value, Decimal):
            if isinstance(value, bool):
                raise ValueError("boolean is not a number")
            return Decimal(str(value))
        if isinstance(column_type, Boolean) and isinstance(value, str):
            lowered = value.strip().lower()
            if lowered in ("true", "t", "1"):
                return True
            if lowered in ("false", "f", "0"):
                return False
            raise ValueError(f"not a boolean: {value}")
    except (ValueError, InvalidOperation) as exc:
        raise DataAccessError(f"Invalid value for {key}: {value!r}") from exc
    return value
