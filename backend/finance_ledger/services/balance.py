"""Balance maintenance engine.

Every transaction carries a positive ``amount``; its effect on the owning
account is ``signed_amount(type, amount)``. The cached ``current_balance`` of
an account is kept equal to ``initial_balance + sum(signed_amount)`` by
applying exactly one relative delta per lifecycle event, inside the same
atomic unit that writes the transaction rows.

The engine never opens units for writes itself: callers (transaction and
transfer services) own the unit boundary and hand the unit in, so the row
writes and balance writes they coordinate commit or roll back together.
"""

import logging
from dataclasses import dataclass
from datetime import date, datetime, time, timezone
from decimal import Decimal
from typing import Any, Iterable
from uuid import UUID, uuid4

from ..errors import InvalidReference, InvalidRequest, NotFound
from ..persistence import LedgerUnit, Persistence
from ..schemas import TransactionType

logger = logging.getLogger(__name__)

INFLOW_TYPES = frozenset({TransactionType.INCOME, TransactionType.TRANSFER_IN})
UPDATABLE_FIELDS = frozenset({"description", "amount", "transaction_at", "category_id", "account_id"})


def signed_amount(tx_type: str | TransactionType, amount: Decimal | str | int) -> Decimal:
    value = Decimal(str(amount))
    return value if TransactionType(tx_type) in INFLOW_TYPES else -value


def net_of(inputs: Iterable[tuple[str, Decimal]]) -> Decimal:
    return sum((signed_amount(tx_type, amount) for tx_type, amount in inputs), Decimal("0"))


def day_bounds(start_date: date | None, end_date: date | None) -> tuple[datetime | None, datetime | None]:
    """Turn an inclusive calendar-date range into UTC instants; the end covers its whole day."""
    if start_date is not None and end_date is not None and start_date > end_date:
        raise InvalidRequest("startDate must not be after endDate")
    start = datetime.combine(start_date, time.min, tzinfo=timezone.utc) if start_date is not None else None
    end = datetime.combine(end_date, time.max, tzinfo=timezone.utc) if end_date is not None else None
    return start, end


@dataclass(frozen=True)
class PeriodBalance:
    opening: Decimal
    closing: Decimal
    net: Decimal
    inflow: Decimal
    outflow: Decimal


class BalanceEngine:
    def __init__(self, persistence: Persistence) -> None:
        self.persistence = persistence

    def owned_account(self, unit: LedgerUnit, user_id: UUID, account_id: UUID) -> dict[str, Any]:
        account = unit.get_account(account_id)
        if account is None or account["user_id"] != user_id:
            raise InvalidReference(f"invalid account: {account_id}")
        return account

    def owned_category(self, unit: LedgerUnit, user_id: UUID, category_id: UUID) -> dict[str, Any]:
        category = unit.get_category(category_id)
        if category is None or category["user_id"] != user_id:
            raise InvalidReference(f"invalid category: {category_id}")
        return category

    def apply_create(self, unit: LedgerUnit, user_id: UUID, posting: dict[str, Any]) -> dict[str, Any]:
        return self.apply_postings(unit, user_id, [posting])[0]

    @staticmethod
    def apply_deltas(unit: LedgerUnit, deltas: dict[UUID, Decimal]) -> None:
        """Move balances in ascending account id order; zero deltas are skipped."""
        for account_id in sorted(deltas, key=str):
            if deltas[account_id]:
                unit.adjust_balance(account_id, deltas[account_id])

    def apply_postings(self, unit: LedgerUnit, user_id: UUID, postings: list[dict[str, Any]]) -> list[dict[str, Any]]:
        """Insert new transactions and move each account by its signed amount.

        All references are validated before the first write.
        """
        for posting in postings:
            self.owned_account(unit, user_id, posting["account_id"])
            self.owned_category(unit, user_id, posting["category_id"])
        rows = []
        deltas: dict[UUID, Decimal] = {}
        for posting in postings:
            now = datetime.now(timezone.utc)
            row = unit.insert_transaction(
                {
                    "id": posting.get("id") or uuid4(),
                    "user_id": user_id,
                    "account_id": posting["account_id"],
                    "category_id": posting["category_id"],
                    "description": posting.get("description") or "",
                    "amount": Decimal(str(posting["amount"])),
                    "type": TransactionType(posting["type"]).value,
                    "transaction_at": posting["transaction_at"],
                    "transfer_group_id": posting.get("transfer_group_id"),
                    "created_at": now,
                    "updated_at": now,
                }
            )
            delta = signed_amount(row["type"], row["amount"])
            deltas[row["account_id"]] = deltas.get(row["account_id"], Decimal("0")) + delta
            logger.debug("posted %s %s to account %s", row["type"], delta, row["account_id"])
            rows.append(row)
        self.apply_deltas(unit, deltas)
        return rows

    def apply_update(self, unit: LedgerUnit, user_id: UUID, old: dict[str, Any], changes: dict[str, Any]) -> dict[str, Any]:
        return self.apply_updates(unit, user_id, [(old, changes)])[0]

    def apply_updates(
        self,
        unit: LedgerUnit,
        user_id: UUID,
        edits: list[tuple[dict[str, Any], dict[str, Any]]],
    ) -> list[dict[str, Any]]:
        """Rewrite transactions and move the balance(s) by the difference.

        ``type`` is never part of an update, so the original type signs both
        the reverted and the reapplied amount. Every new reference is checked
        before the first write.
        """
        planned = []
        for old, changes in edits:
            fields = {key: value for key, value in changes.items() if key in UPDATABLE_FIELDS}
            if fields.get("account_id", old["account_id"]) != old["account_id"]:
                self.owned_account(unit, user_id, fields["account_id"])
            if "category_id" in fields and fields["category_id"] != old["category_id"]:
                self.owned_category(unit, user_id, fields["category_id"])
            planned.append((old, fields))

        rows = []
        deltas: dict[UUID, Decimal] = {}
        for old, fields in planned:
            if not fields:
                rows.append(old)
                continue
            new_account_id = fields.get("account_id", old["account_id"])
            new_amount = Decimal(str(fields.get("amount", old["amount"])))
            revert = -signed_amount(old["type"], old["amount"])
            reapply = signed_amount(old["type"], new_amount)
            deltas[old["account_id"]] = deltas.get(old["account_id"], Decimal("0")) + revert
            deltas[new_account_id] = deltas.get(new_account_id, Decimal("0")) + reapply
            fields["updated_at"] = datetime.now(timezone.utc)
            rows.append(unit.update_transaction(old["id"], fields))
        self.apply_deltas(unit, deltas)
        return rows

    def apply_delete(self, unit: LedgerUnit, old: dict[str, Any]) -> None:
        self.apply_deletes(unit, [old])

    def apply_deletes(self, unit: LedgerUnit, rows: list[dict[str, Any]]) -> None:
        deltas: dict[UUID, Decimal] = {}
        for old in rows:
            unit.delete_transaction(old["id"])
            deltas[old["account_id"]] = deltas.get(old["account_id"], Decimal("0")) - signed_amount(old["type"], old["amount"])
        self.apply_deltas(unit, deltas)

    def reconstruct_balance(
        self,
        unit: LedgerUnit,
        account: dict[str, Any],
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> Decimal:
        """Initial balance plus the signed sum of the account's history.

        Does not read ``current_balance``; without a range it must agree with it.
        """
        inputs = unit.signed_inputs(account["id"], start=start, end=end)
        return Decimal(str(account["initial_balance"])) + net_of(inputs)

    def reconstruct_opening_closing(
        self,
        unit: LedgerUnit,
        account: dict[str, Any],
        start: datetime | None,
        end: datetime | None,
    ) -> PeriodBalance:
        """Opening and closing balance of ``[start, end]`` anchored on the cache.

        ``closing = cached - net(after end)`` and ``opening = closing - net(within)``.
        A missing ``end`` means nothing lies after the period; a missing
        ``start`` means the period reaches back to the first transaction.
        """
        within = unit.signed_inputs(account["id"], start=start, end=end)
        net_after = net_of(unit.signed_inputs(account["id"], after=end)) if end is not None else Decimal("0")
        closing = Decimal(str(account["current_balance"])) - net_after
        signed = [signed_amount(tx_type, amount) for tx_type, amount in within]
        net_within = sum(signed, Decimal("0"))
        return PeriodBalance(
            opening=closing - net_within,
            closing=closing,
            net=net_within,
            inflow=sum((s for s in signed if s > 0), Decimal("0")),
            outflow=sum((-s for s in signed if s < 0), Decimal("0")),
        )

    def account_balances(self, user_id: UUID) -> list[tuple[dict[str, Any], Decimal]]:
        with self.persistence.atomic() as unit:
            return [(account, self.reconstruct_balance(unit, account)) for account in unit.list_accounts(user_id)]

    def period_balance(
        self,
        user_id: UUID,
        account_id: UUID,
        start: datetime | None,
        end: datetime | None,
    ) -> tuple[dict[str, Any], Decimal, PeriodBalance]:
        with self.persistence.atomic() as unit:
            account = unit.get_account(account_id)
            if account is None or account["user_id"] != user_id:
                raise NotFound(f"account not found: {account_id}")
            balance = self.reconstruct_balance(unit, account, start=start, end=end)
            return account, balance, self.reconstruct_opening_closing(unit, account, start, end)
