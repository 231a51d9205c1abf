import logging
from datetime import date
from typing import Any
from uuid import UUID

from ..errors import AccessDenied, CollaboratorFailure, InvalidRequest, InvalidTransfer, NotFound
from ..persistence import LedgerUnit, Persistence
from ..receipts import ReceiptStorage, StoredReceipt, receipt_key
from ..schemas import TransactionCreate, TransactionUpdate
from .balance import BalanceEngine, day_bounds

logger = logging.getLogger(__name__)

# Fields a transfer leg shares with its counterpart.
MIRRORED_FIELDS = ("amount", "transaction_at")


class TransactionService:
    def __init__(self, persistence: Persistence, engine: BalanceEngine, receipts: ReceiptStorage) -> None:
        self.persistence = persistence
        self.engine = engine
        self.receipts = receipts

    @staticmethod
    def _owned(unit: LedgerUnit, user_id: UUID, transaction_id: UUID, for_update: bool = False) -> dict[str, Any]:
        row = unit.get_transaction(transaction_id, for_update=for_update)
        if row is None:
            raise NotFound(f"transaction not found: {transaction_id}")
        if row["user_id"] != user_id:
            raise AccessDenied("transaction belongs to another user")
        return row

    def create(self, user_id: UUID, payload: TransactionCreate) -> dict[str, Any]:
        with self.persistence.atomic() as unit:
            return self.engine.apply_create(
                unit,
                user_id,
                {
                    "account_id": payload.accountId,
                    "category_id": payload.categoryId,
                    "description": payload.description,
                    "amount": payload.amount,
                    "type": payload.type,
                    "transaction_at": payload.date,
                },
            )

    def list_transactions(
        self,
        user_id: UUID,
        account_id: UUID | None = None,
        start_date: date | None = None,
        end_date: date | None = None,
    ) -> list[dict[str, Any]]:
        start, end = day_bounds(start_date, end_date)
        with self.persistence.atomic() as unit:
            return unit.list_transactions(user_id, account_id=account_id, start=start, end=end)

    def get(self, user_id: UUID, transaction_id: UUID) -> dict[str, Any]:
        with self.persistence.atomic() as unit:
            return self._owned(unit, user_id, transaction_id)

    def update(self, user_id: UUID, transaction_id: UUID, payload: TransactionUpdate) -> dict[str, Any]:
        updates = payload.model_dump(exclude_none=True)
        changes: dict[str, Any] = {}
        if "description" in updates:
            changes["description"] = updates["description"]
        if "amount" in updates:
            changes["amount"] = updates["amount"]
        if "date" in updates:
            changes["transaction_at"] = updates["date"]
        if "categoryId" in updates:
            changes["category_id"] = updates["categoryId"]
        if "accountId" in updates:
            changes["account_id"] = updates["accountId"]
        with self.persistence.atomic() as unit:
            old, legs = self._locked(unit, user_id, transaction_id)
            edits = [(old, changes)]
            for counterpart in legs:
                if counterpart["id"] == old["id"]:
                    continue
                if changes.get("account_id") == counterpart["account_id"]:
                    raise InvalidTransfer("both legs of a transfer cannot use the same account")
                edits.append((counterpart, {key: changes[key] for key in MIRRORED_FIELDS if key in changes}))
            return self.engine.apply_updates(unit, user_id, edits)[0]

    def delete(self, user_id: UUID, transaction_id: UUID) -> list[dict[str, Any]]:
        """Delete a transaction, or both legs when it belongs to a transfer."""
        with self.persistence.atomic() as unit:
            old, legs = self._locked(unit, user_id, transaction_id)
            removed = legs or [old]
            self.engine.apply_deletes(unit, removed)
        for row in removed:
            self._release_receipt(row["user_id"], row["id"])
        return removed

    def _locked(self, unit: LedgerUnit, user_id: UUID, transaction_id: UUID) -> tuple[dict[str, Any], list[dict[str, Any]]]:
        """Lock a transaction for writing; a transfer leg locks its whole group.

        Returns the row and, for transfers, every leg of the group (empty otherwise).
        Group legs are locked together in id order, never one leg first.
        """
        row = self._owned(unit, user_id, transaction_id)
        if row["transfer_group_id"] is None:
            return self._owned(unit, user_id, transaction_id, for_update=True), []
        legs = unit.transfer_legs(row["transfer_group_id"])
        for leg in legs:
            if leg["id"] == transaction_id:
                return leg, legs
        raise NotFound(f"transaction not found: {transaction_id}")

    def _release_receipt(self, user_id: UUID, transaction_id: UUID) -> None:
        key = receipt_key(user_id, transaction_id)
        try:
            self.receipts.delete(key)
        except Exception:
            logger.exception("could not remove receipt %s; the transaction was deleted anyway", key)

    def attach_receipt(self, user_id: UUID, transaction_id: UUID, content: bytes, filename: str, content_type: str) -> StoredReceipt:
        self.get(user_id, transaction_id)
        if not content:
            raise InvalidRequest("receipt file is empty")
        key = receipt_key(user_id, transaction_id)
        try:
            return self.receipts.upload(key, content, filename, content_type)
        except Exception as exc:
            logger.exception("receipt upload failed for %s", key)
            raise CollaboratorFailure("receipt upload failed") from exc

    def get_receipt(self, user_id: UUID, transaction_id: UUID) -> StoredReceipt:
        self.get(user_id, transaction_id)
        key = receipt_key(user_id, transaction_id)
        try:
            receipt = self.receipts.download(key)
        except Exception as exc:
            logger.exception("receipt download failed for %s", key)
            raise CollaboratorFailure("receipt download failed") from exc
        if receipt is None:
            raise NotFound(f"receipt not found for transaction: {transaction_id}")
        return receipt

    def remove_receipt(self, user_id: UUID, transaction_id: UUID) -> None:
        self.get(user_id, transaction_id)
        key = receipt_key(user_id, transaction_id)
        try:
            removed = self.receipts.delete(key)
        except Exception as exc:
            logger.exception("receipt delete failed for %s", key)
            raise CollaboratorFailure("receipt delete failed") from exc
        if not removed:
            raise NotFound(f"receipt not found for transaction: {transaction_id}")
