from __future__ import annotations

import logging
from contextlib import contextmanager
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Callable, Iterator
from uuid import UUID, uuid4

from sqlalchemy import create_engine, text
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import IntegrityError

from .config import Settings
from .errors import AtomicityFailure, Conflict, EmailAlreadyRegistered, LedgerError, NotFound
from .schemas import AccountCreate, AccountType, AccountUpdate, CategoryCreate, CategoryUpdate
from .store import InMemoryStore

logger = logging.getLogger(__name__)

DEFAULT_ACCOUNT_NAME = "Wallet"
TRANSFER_CATEGORY = "Transfer"
DEFAULT_CATEGORIES = (
    "Food",
    "Transport",
    "Housing",
    "Leisure",
    "Health",
    "Education",
    "Salary",
    "Other",
    TRANSFER_CATEGORY,
)

ACCOUNT_COLUMNS = "id, user_id, name, account_type, initial_balance, current_balance, color, icon, created_at, updated_at"
CATEGORY_COLUMNS = "id, user_id, name, created_at"
TRANSACTION_COLUMNS = (
    "id, user_id, account_id, category_id, description, amount, type, transaction_at, transfer_group_id, created_at, updated_at"
)


def _now() -> datetime:
    return datetime.now(timezone.utc)


class LedgerUnit:
    """Row-level operations available inside one atomic unit of work.

    Every write made through a unit is committed together when the unit
    closes normally and discarded when it closes with an exception.
    Balance changes are always relative (``adjust_balance``) so concurrent
    units never overwrite each other's increments.
    """

    def insert_user(self, row: dict[str, Any]) -> dict[str, Any]:
        raise NotImplementedError

    def get_user(self, user_id: UUID) -> dict[str, Any] | None:
        raise NotImplementedError

    def find_user_by_email(self, email: str) -> dict[str, Any] | None:
        raise NotImplementedError

    def update_user(self, user_id: UUID, fields: dict[str, Any]) -> dict[str, Any]:
        raise NotImplementedError

    def insert_account(self, row: dict[str, Any]) -> dict[str, Any]:
        raise NotImplementedError

    def get_account(self, account_id: UUID) -> dict[str, Any] | None:
        raise NotImplementedError

    def list_accounts(self, user_id: UUID) -> list[dict[str, Any]]:
        raise NotImplementedError

    def update_account(self, account_id: UUID, fields: dict[str, Any]) -> dict[str, Any]:
        raise NotImplementedError

    def delete_account(self, account_id: UUID) -> None:
        raise NotImplementedError

    def adjust_balance(self, account_id: UUID, delta: Decimal) -> None:
        raise NotImplementedError

    def insert_category(self, row: dict[str, Any]) -> dict[str, Any]:
        raise NotImplementedError

    def get_category(self, category_id: UUID) -> dict[str, Any] | None:
        raise NotImplementedError

    def list_categories(self, user_id: UUID) -> list[dict[str, Any]]:
        raise NotImplementedError

    def find_or_create_category(self, user_id: UUID, name: str) -> dict[str, Any]:
        raise NotImplementedError

    def update_category(self, category_id: UUID, fields: dict[str, Any]) -> dict[str, Any]:
        raise NotImplementedError

    def delete_category(self, category_id: UUID) -> None:
        raise NotImplementedError

    def insert_transaction(self, row: dict[str, Any]) -> dict[str, Any]:
        raise NotImplementedError

    def get_transaction(self, transaction_id: UUID, for_update: bool = False) -> dict[str, Any] | None:
        raise NotImplementedError

    def list_transactions(
        self,
        user_id: UUID,
        account_id: UUID | None = None,
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> list[dict[str, Any]]:
        raise NotImplementedError

    def transfer_legs(self, transfer_group_id: UUID) -> list[dict[str, Any]]:
        raise NotImplementedError

    def update_transaction(self, transaction_id: UUID, fields: dict[str, Any]) -> dict[str, Any]:
        raise NotImplementedError

    def delete_transaction(self, transaction_id: UUID) -> None:
        raise NotImplementedError

    def count_transactions(self, account_id: UUID | None = None, category_id: UUID | None = None) -> int:
        raise NotImplementedError

    def signed_inputs(
        self,
        account_id: UUID,
        start: datetime | None = None,
        end: datetime | None = None,
        after: datetime | None = None,
    ) -> list[tuple[str, Decimal]]:
        """Return ``(type, amount)`` for the account's transactions.

        ``start``/``end`` bound ``transaction_at`` inclusively, ``after`` is a
        strict lower bound. The sign is applied by the balance engine.
        """
        raise NotImplementedError


class Persistence:
    def _begin(self):
        raise NotImplementedError

    def close(self) -> None:
        pass

    @contextmanager
    def atomic(self) -> Iterator[LedgerUnit]:
        try:
            with self._begin() as unit:
                yield unit
        except LedgerError:
            raise
        except Exception as exc:
            logger.exception("ledger unit aborted and rolled back")
            raise AtomicityFailure("the operation could not be completed and was rolled back") from exc

    def register_user(self, name: str, email: str, password_hash: str) -> dict[str, Any]:
        now = _now()
        with self.atomic() as unit:
            if unit.find_user_by_email(email) is not None:
                raise EmailAlreadyRegistered("email already registered")
            user = unit.insert_user(
                {
                    "id": uuid4(),
                    "name": name,
                    "email": email,
                    "password_hash": password_hash,
                    "is_verified": False,
                    "created_at": now,
                    "updated_at": now,
                }
            )
            unit.insert_account(
                {
                    "id": uuid4(),
                    "user_id": user["id"],
                    "name": DEFAULT_ACCOUNT_NAME,
                    "account_type": AccountType.cash.value,
                    "initial_balance": Decimal("0"),
                    "current_balance": Decimal("0"),
                    "color": None,
                    "icon": None,
                    "created_at": now,
                    "updated_at": now,
                }
            )
            for category_name in DEFAULT_CATEGORIES:
                unit.insert_category({"id": uuid4(), "user_id": user["id"], "name": category_name, "created_at": now})
        return user

    def get_user_by_email(self, email: str) -> dict[str, Any] | None:
        with self.atomic() as unit:
            return unit.find_user_by_email(email)

    def get_user_by_id(self, user_id: UUID) -> dict[str, Any] | None:
        with self.atomic() as unit:
            return unit.get_user(user_id)

    def mark_user_verified(self, user_id: UUID) -> dict[str, Any]:
        with self.atomic() as unit:
            return unit.update_user(user_id, {"is_verified": True, "updated_at": _now()})

    def create_account(self, user_id: UUID, payload: AccountCreate) -> dict[str, Any]:
        now = _now()
        with self.atomic() as unit:
            return unit.insert_account(
                {
                    "id": uuid4(),
                    "user_id": user_id,
                    "name": payload.name,
                    "account_type": payload.accountType.value,
                    "initial_balance": payload.initialBalance,
                    "current_balance": payload.initialBalance,
                    "color": payload.color,
                    "icon": payload.icon,
                    "created_at": now,
                    "updated_at": now,
                }
            )

    def list_accounts(self, user_id: UUID) -> list[dict[str, Any]]:
        with self.atomic() as unit:
            return unit.list_accounts(user_id)

    def get_account(self, user_id: UUID, account_id: UUID) -> dict[str, Any]:
        with self.atomic() as unit:
            return _owned(unit.get_account(account_id), user_id, f"account not found: {account_id}")

    def update_account(self, user_id: UUID, account_id: UUID, payload: AccountUpdate) -> dict[str, Any]:
        updates = payload.model_dump(exclude_none=True)
        fields: dict[str, Any] = {}
        if "name" in updates:
            fields["name"] = updates["name"]
        if "accountType" in updates:
            fields["account_type"] = AccountType(updates["accountType"]).value
        if "color" in updates:
            fields["color"] = updates["color"]
        if "icon" in updates:
            fields["icon"] = updates["icon"]
        with self.atomic() as unit:
            row = _owned(unit.get_account(account_id), user_id, f"account not found: {account_id}")
            if not fields:
                return row
            fields["updated_at"] = _now()
            return unit.update_account(account_id, fields)

    def delete_account(self, user_id: UUID, account_id: UUID) -> None:
        with self.atomic() as unit:
            _owned(unit.get_account(account_id), user_id, f"account not found: {account_id}")
            if unit.count_transactions(account_id=account_id):
                raise Conflict("account still has transactions; delete or move them first")
            unit.delete_account(account_id)

    def create_category(self, user_id: UUID, payload: CategoryCreate) -> dict[str, Any]:
        with self.atomic() as unit:
            return unit.insert_category({"id": uuid4(), "user_id": user_id, "name": payload.name, "created_at": _now()})

    def list_categories(self, user_id: UUID) -> list[dict[str, Any]]:
        with self.atomic() as unit:
            return unit.list_categories(user_id)

    def update_category(self, user_id: UUID, category_id: UUID, payload: CategoryUpdate) -> dict[str, Any]:
        with self.atomic() as unit:
            _owned(unit.get_category(category_id), user_id, f"category not found: {category_id}")
            return unit.update_category(category_id, {"name": payload.name})

    def delete_category(self, user_id: UUID, category_id: UUID) -> None:
        with self.atomic() as unit:
            _owned(unit.get_category(category_id), user_id, f"category not found: {category_id}")
            if unit.count_transactions(category_id=category_id):
                raise Conflict("category is used by transactions; reassign them first")
            unit.delete_category(category_id)


def _owned(row: dict[str, Any] | None, user_id: UUID, message: str) -> dict[str, Any]:
    if row is None or row["user_id"] != user_id:
        raise NotFound(message)
    return row


class InMemoryUnit(LedgerUnit):
    def __init__(self, store: InMemoryStore) -> None:
        self._store = store
        self._undo: list[Callable[[], None]] = []

    def rollback(self) -> None:
        while self._undo:
            self._undo.pop()()

    def _put(self, table: dict[UUID, dict], key: UUID, row: dict[str, Any]) -> dict[str, Any]:
        previous = table.get(key)
        if previous is None:
            self._undo.append(lambda: table.pop(key, None))
        else:
            self._undo.append(lambda: table.__setitem__(key, previous))
        table[key] = row
        return dict(row)

    def _remove(self, table: dict[UUID, dict], key: UUID) -> None:
        previous = table.pop(key)
        self._undo.append(lambda: table.__setitem__(key, previous))

    @staticmethod
    def _get(table: dict[UUID, dict], key: UUID) -> dict[str, Any] | None:
        row = table.get(key)
        return dict(row) if row is not None else None

    def _patch(self, table: dict[UUID, dict], key: UUID, fields: dict[str, Any], label: str) -> dict[str, Any]:
        current = table.get(key)
        if current is None:
            raise NotFound(f"{label} not found: {key}")
        return self._put(table, key, {**current, **fields})

    def insert_user(self, row: dict[str, Any]) -> dict[str, Any]:
        if self.find_user_by_email(row["email"]) is not None:
            raise EmailAlreadyRegistered("email already registered")
        return self._put(self._store.users, row["id"], dict(row))

    def get_user(self, user_id: UUID) -> dict[str, Any] | None:
        return self._get(self._store.users, user_id)

    def find_user_by_email(self, email: str) -> dict[str, Any] | None:
        for row in self._store.users.values():
            if row["email"].lower() == email.lower():
                return dict(row)
        return None

    def update_user(self, user_id: UUID, fields: dict[str, Any]) -> dict[str, Any]:
        return self._patch(self._store.users, user_id, fields, "user")

    def insert_account(self, row: dict[str, Any]) -> dict[str, Any]:
        return self._put(self._store.accounts, row["id"], dict(row))

    def get_account(self, account_id: UUID) -> dict[str, Any] | None:
        return self._get(self._store.accounts, account_id)

    def list_accounts(self, user_id: UUID) -> list[dict[str, Any]]:
        rows = [dict(a) for a in self._store.accounts.values() if a["user_id"] == user_id]
        return sorted(rows, key=lambda a: a["created_at"])

    def update_account(self, account_id: UUID, fields: dict[str, Any]) -> dict[str, Any]:
        return self._patch(self._store.accounts, account_id, fields, "account")

    def delete_account(self, account_id: UUID) -> None:
        self._remove(self._store.accounts, account_id)

    def adjust_balance(self, account_id: UUID, delta: Decimal) -> None:
        current = self._store.accounts.get(account_id)
        if current is None:
            raise NotFound(f"account not found: {account_id}")
        self._put(
            self._store.accounts,
            account_id,
            {**current, "current_balance": Decimal(current["current_balance"]) + delta, "updated_at": _now()},
        )

    def _category_named(self, user_id: UUID, name: str) -> dict[str, Any] | None:
        for row in self._store.categories.values():
            if row["user_id"] == user_id and row["name"] == name:
                return row
        return None

    def insert_category(self, row: dict[str, Any]) -> dict[str, Any]:
        if self._category_named(row["user_id"], row["name"]) is not None:
            raise Conflict(f"category already exists: {row['name']}")
        return self._put(self._store.categories, row["id"], dict(row))

    def get_category(self, category_id: UUID) -> dict[str, Any] | None:
        return self._get(self._store.categories, category_id)

    def list_categories(self, user_id: UUID) -> list[dict[str, Any]]:
        rows = [dict(c) for c in self._store.categories.values() if c["user_id"] == user_id]
        return sorted(rows, key=lambda c: c["name"].lower())

    def find_or_create_category(self, user_id: UUID, name: str) -> dict[str, Any]:
        existing = self._category_named(user_id, name)
        if existing is not None:
            return dict(existing)
        return self.insert_category({"id": uuid4(), "user_id": user_id, "name": name, "created_at": _now()})

    def update_category(self, category_id: UUID, fields: dict[str, Any]) -> dict[str, Any]:
        current = self._store.categories.get(category_id)
        if current is None:
            raise NotFound(f"category not found: {category_id}")
        clash = self._category_named(current["user_id"], fields.get("name", current["name"]))
        if clash is not None and clash["id"] != category_id:
            raise Conflict(f"category already exists: {fields['name']}")
        return self._put(self._store.categories, category_id, {**current, **fields})

    def delete_category(self, category_id: UUID) -> None:
        self._remove(self._store.categories, category_id)

    def insert_transaction(self, row: dict[str, Any]) -> dict[str, Any]:
        return self._put(self._store.transactions, row["id"], dict(row))

    def get_transaction(self, transaction_id: UUID, for_update: bool = False) -> dict[str, Any] | None:
        return self._get(self._store.transactions, transaction_id)

    def list_transactions(
        self,
        user_id: UUID,
        account_id: UUID | None = None,
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> list[dict[str, Any]]:
        rows = []
        for tx in self._store.transactions.values():
            if tx["user_id"] != user_id:
                continue
            if account_id is not None and tx["account_id"] != account_id:
                continue
            if start is not None and tx["transaction_at"] < start:
                continue
            if end is not None and tx["transaction_at"] > end:
                continue
            rows.append(dict(tx))
        return sorted(rows, key=lambda t: (t["transaction_at"], t["created_at"]), reverse=True)

    def transfer_legs(self, transfer_group_id: UUID) -> list[dict[str, Any]]:
        legs = [dict(t) for t in self._store.transactions.values() if t.get("transfer_group_id") == transfer_group_id]
        return sorted(legs, key=lambda t: str(t["id"]))

    def update_transaction(self, transaction_id: UUID, fields: dict[str, Any]) -> dict[str, Any]:
        return self._patch(self._store.transactions, transaction_id, fields, "transaction")

    def delete_transaction(self, transaction_id: UUID) -> None:
        self._remove(self._store.transactions, transaction_id)

    def count_transactions(self, account_id: UUID | None = None, category_id: UUID | None = None) -> int:
        count = 0
        for tx in self._store.transactions.values():
            if account_id is not None and tx["account_id"] != account_id:
                continue
            if category_id is not None and tx["category_id"] != category_id:
                continue
            count += 1
        return count

    def signed_inputs(
        self,
        account_id: UUID,
        start: datetime | None = None,
        end: datetime | None = None,
        after: datetime | None = None,
    ) -> list[tuple[str, Decimal]]:
        result = []
        for tx in self._store.transactions.values():
            if tx["account_id"] != account_id:
                continue
            moment = tx["transaction_at"]
            if start is not None and moment < start:
                continue
            if end is not None and moment > end:
                continue
            if after is not None and moment <= after:
                continue
            result.append((tx["type"], Decimal(tx["amount"])))
        return result


class InMemoryPersistence(Persistence):
    """Process-local backend for development and tests.

    One store-wide lock is held for the whole of every unit, reads included,
    so units run one at a time even when they touch unrelated accounts.
    Parallel units on different accounts need ``PostgresPersistence``.
    """

    def __init__(self, store: InMemoryStore | None = None) -> None:
        self.store = store or InMemoryStore()

    @contextmanager
    def _begin(self) -> Iterator[InMemoryUnit]:
        with self.store.lock:
            unit = InMemoryUnit(self.store)
            try:
                yield unit
            except BaseException:
                unit.rollback()
                raise


class PostgresUnit(LedgerUnit):
    def __init__(self, conn: Connection) -> None:
        self._conn = conn

    def _run(self, sql: str, params: dict[str, Any] | None = None) -> list[dict[str, Any]]:
        result = self._conn.execute(text(sql), params or {})
        if result.returns_rows:
            return [dict(row._mapping) for row in result.fetchall()]
        return []

    def _one(self, sql: str, params: dict[str, Any]) -> dict[str, Any] | None:
        rows = self._run(sql, params)
        return rows[0] if rows else None

    def _update(self, table: str, columns: str, key: UUID, fields: dict[str, Any], label: str) -> dict[str, Any]:
        assignments = ", ".join(f"{column} = :{column}" for column in fields)
        row = self._one(
            f"update {table} set {assignments} where id = :id returning {columns}",
            {**fields, "id": key},
        )
        if row is None:
            raise NotFound(f"{label} not found: {key}")
        return row

    def insert_user(self, row: dict[str, Any]) -> dict[str, Any]:
        try:
            return self._run(
                """
                insert into users (id, name, email, password_hash, is_verified, created_at, updated_at)
                values (:id, :name, :email, :password_hash, :is_verified, :created_at, :updated_at)
                returning id, name, email, password_hash, is_verified, created_at, updated_at
                """,
                row,
            )[0]
        except IntegrityError as exc:
            raise EmailAlreadyRegistered("email already registered") from exc

    def get_user(self, user_id: UUID) -> dict[str, Any] | None:
        return self._one(
            "select id, name, email, password_hash, is_verified, created_at, updated_at from users where id = :id",
            {"id": user_id},
        )

    def find_user_by_email(self, email: str) -> dict[str, Any] | None:
        return self._one(
            "select id, name, email, password_hash, is_verified, created_at, updated_at from users where lower(email) = lower(:email)",
            {"email": email},
        )

    def update_user(self, user_id: UUID, fields: dict[str, Any]) -> dict[str, Any]:
        return self._update("users", "id, name, email, password_hash, is_verified, created_at, updated_at", user_id, fields, "user")

    def insert_account(self, row: dict[str, Any]) -> dict[str, Any]:
        return self._run(
            f"""
            insert into accounts ({ACCOUNT_COLUMNS})
            values (:id, :user_id, :name, :account_type, :initial_balance, :current_balance, :color, :icon, :created_at, :updated_at)
            returning {ACCOUNT_COLUMNS}
            """,
            row,
        )[0]

    def get_account(self, account_id: UUID) -> dict[str, Any] | None:
        return self._one(f"select {ACCOUNT_COLUMNS} from accounts where id = :id", {"id": account_id})

    def list_accounts(self, user_id: UUID) -> list[dict[str, Any]]:
        return self._run(
            f"select {ACCOUNT_COLUMNS} from accounts where user_id = :user_id order by created_at",
            {"user_id": user_id},
        )

    def update_account(self, account_id: UUID, fields: dict[str, Any]) -> dict[str, Any]:
        return self._update("accounts", ACCOUNT_COLUMNS, account_id, fields, "account")

    def delete_account(self, account_id: UUID) -> None:
        self._run("delete from accounts where id = :id", {"id": account_id})

    def adjust_balance(self, account_id: UUID, delta: Decimal) -> None:
        result = self._conn.execute(
            text("update accounts set current_balance = current_balance + :delta, updated_at = now() where id = :id"),
            {"delta": delta, "id": account_id},
        )
        if result.rowcount != 1:
            raise NotFound(f"account not found: {account_id}")

    def insert_category(self, row: dict[str, Any]) -> dict[str, Any]:
        try:
            return self._run(
                f"insert into categories ({CATEGORY_COLUMNS}) values (:id, :user_id, :name, :created_at) returning {CATEGORY_COLUMNS}",
                row,
            )[0]
        except IntegrityError as exc:
            raise Conflict(f"category already exists: {row['name']}") from exc

    def get_category(self, category_id: UUID) -> dict[str, Any] | None:
        return self._one(f"select {CATEGORY_COLUMNS} from categories where id = :id", {"id": category_id})

    def list_categories(self, user_id: UUID) -> list[dict[str, Any]]:
        return self._run(
            f"select {CATEGORY_COLUMNS} from categories where user_id = :user_id order by lower(name)",
            {"user_id": user_id},
        )

    def find_or_create_category(self, user_id: UUID, name: str) -> dict[str, Any]:
        self._run(
            """
            insert into categories (id, user_id, name, created_at)
            values (:id, :user_id, :name, now())
            on conflict (user_id, name) do nothing
            """,
            {"id": uuid4(), "user_id": user_id, "name": name},
        )
        return self._run(
            f"select {CATEGORY_COLUMNS} from categories where user_id = :user_id and name = :name",
            {"user_id": user_id, "name": name},
        )[0]

    def update_category(self, category_id: UUID, fields: dict[str, Any]) -> dict[str, Any]:
        try:
            return self._update("categories", CATEGORY_COLUMNS, category_id, fields, "category")
        except IntegrityError as exc:
            raise Conflict(f"category already exists: {fields.get('name')}") from exc

    def delete_category(self, category_id: UUID) -> None:
        self._run("delete from categories where id = :id", {"id": category_id})

    def insert_transaction(self, row: dict[str, Any]) -> dict[str, Any]:
        return self._run(
            f"""
            insert into transactions ({TRANSACTION_COLUMNS})
            values (
              :id, :user_id, :account_id, :category_id, :description, :amount, :type, :transaction_at,
              :transfer_group_id, :created_at, :updated_at
            )
            returning {TRANSACTION_COLUMNS}
            """,
            row,
        )[0]

    def get_transaction(self, transaction_id: UUID, for_update: bool = False) -> dict[str, Any] | None:
        lock = " for update" if for_update else ""
        return self._one(f"select {TRANSACTION_COLUMNS} from transactions where id = :id{lock}", {"id": transaction_id})

    def list_transactions(
        self,
        user_id: UUID,
        account_id: UUID | None = None,
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> list[dict[str, Any]]:
        clauses = ["user_id = :user_id"]
        params: dict[str, Any] = {"user_id": user_id}
        if account_id is not None:
            clauses.append("account_id = :account_id")
            params["account_id"] = account_id
        if start is not None:
            clauses.append("transaction_at >= :start")
            params["start"] = start
        if end is not None:
            clauses.append("transaction_at <= :end")
            params["end"] = end
        return self._run(
            f"select {TRANSACTION_COLUMNS} from transactions where {' and '.join(clauses)} order by transaction_at desc, created_at desc",
            params,
        )

    def transfer_legs(self, transfer_group_id: UUID) -> list[dict[str, Any]]:
        return self._run(
            f"select {TRANSACTION_COLUMNS} from transactions where transfer_group_id = :group_id order by id for update",
            {"group_id": transfer_group_id},
        )

    def update_transaction(self, transaction_id: UUID, fields: dict[str, Any]) -> dict[str, Any]:
        return self._update("transactions", TRANSACTION_COLUMNS, transaction_id, fields, "transaction")

    def delete_transaction(self, transaction_id: UUID) -> None:
        self._run("delete from transactions where id = :id", {"id": transaction_id})

    def count_transactions(self, account_id: UUID | None = None, category_id: UUID | None = None) -> int:
        clauses = []
        params: dict[str, Any] = {}
        if account_id is not None:
            clauses.append("account_id = :account_id")
            params["account_id"] = account_id
        if category_id is not None:
            clauses.append("category_id = :category_id")
            params["category_id"] = category_id
        where = f" where {' and '.join(clauses)}" if clauses else ""
        return int(self._run(f"select count(*) as c from transactions{where}", params)[0]["c"])

    def signed_inputs(
        self,
        account_id: UUID,
        start: datetime | None = None,
        end: datetime | None = None,
        after: datetime | None = None,
    ) -> list[tuple[str, Decimal]]:
        clauses = ["account_id = :account_id"]
        params: dict[str, Any] = {"account_id": account_id}
        if start is not None:
            clauses.append("transaction_at >= :start")
            params["start"] = start
        if end is not None:
            clauses.append("transaction_at <= :end")
            params["end"] = end
        if after is not None:
            clauses.append("transaction_at > :after")
            params["after"] = after
        rows = self._run(f"select type, amount from transactions where {' and '.join(clauses)}", params)
        return [(row["type"], Decimal(str(row["amount"]))) for row in rows]


class PostgresPersistence(Persistence):
    def __init__(self, database_url: str) -> None:
        self.engine: Engine = create_engine(database_url, future=True, pool_pre_ping=True)
        self._ensure_schema()

    def close(self) -> None:
        self.engine.dispose()

    @contextmanager
    def _begin(self) -> Iterator[PostgresUnit]:
        with self.engine.begin() as conn:
            yield PostgresUnit(conn)

    def _ensure_schema(self) -> None:
        statements = [
            """
            create table if not exists users (
              id uuid primary key,
              name text not null,
              email text not null unique,
              password_hash text not null,
              is_verified boolean not null default false,
              created_at timestamptz not null default now(),
              updated_at timestamptz not null default now()
            )
            """,
            """
            create table if not exists accounts (
              id uuid primary key,
              user_id uuid not null references users(id) on delete cascade,
              name text not null,
              account_type text not null default 'checking',
              initial_balance numeric(14,2) not null default 0,
              current_balance numeric(14,2) not null default 0,
              color text,
              icon text,
              created_at timestamptz not null default now(),
              updated_at timestamptz not null default now()
            )
            """,
            "create index if not exists idx_accounts_user on accounts(user_id, created_at)",
            """
            create table if not exists categories (
              id uuid primary key,
              user_id uuid not null references users(id) on delete cascade,
              name text not null,
              created_at timestamptz not null default now(),
              unique (user_id, name)
            )
            """,
            """
            create table if not exists transactions (
              id uuid primary key,
              user_id uuid not null references users(id) on delete cascade,
              account_id uuid not null references accounts(id) on delete restrict,
              category_id uuid not null references categories(id) on delete restrict,
              description text not null default '',
              amount numeric(14,2) not null check (amount > 0),
              type text not null check (type in ('INCOME', 'EXPENSE', 'TRANSFER_IN', 'TRANSFER_OUT')),
              transaction_at timestamptz not null,
              transfer_group_id uuid,
              created_at timestamptz not null default now(),
              updated_at timestamptz not null default now()
            )
            """,
            "create index if not exists idx_transactions_account_date on transactions(account_id, transaction_at)",
            "create index if not exists idx_transactions_user_date on transactions(user_id, transaction_at desc)",
            "create index if not exists idx_transactions_transfer_group on transactions(transfer_group_id)",
        ]
        with self.engine.begin() as conn:
            for statement in statements:
                conn.execute(text(statement))


def get_persistence(settings: Settings) -> Persistence:
    if settings.storage_backend == "postgres":
        return PostgresPersistence(settings.database_url)
    return InMemoryPersistence()
