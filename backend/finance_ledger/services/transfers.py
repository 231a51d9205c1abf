import logging
from typing import Any
from uuid import UUID, uuid4

from ..errors import InvalidTransfer
from ..persistence import TRANSFER_CATEGORY, Persistence
from ..schemas import TransactionType, TransferCreate
from .balance import BalanceEngine

logger = logging.getLogger(__name__)


class TransferService:
    def __init__(self, persistence: Persistence, engine: BalanceEngine) -> None:
        self.persistence = persistence
        self.engine = engine

    def transfer(self, user_id: UUID, payload: TransferCreate) -> dict[str, Any]:
        """Post a TRANSFER_OUT on the source and a TRANSFER_IN on the destination as one unit."""
        if payload.sourceAccountId == payload.destinationAccountId:
            raise InvalidTransfer("source and destination accounts must be different")
        if payload.amount <= 0:
            raise InvalidTransfer("amount must be greater than zero")
        with self.persistence.atomic() as unit:
            source = self.engine.owned_account(unit, user_id, payload.sourceAccountId)
            destination = self.engine.owned_account(unit, user_id, payload.destinationAccountId)
            category = unit.find_or_create_category(user_id, TRANSFER_CATEGORY)
            group_id = uuid4()
            outgoing, incoming = self.engine.apply_postings(
                unit,
                user_id,
                [
                    {
                        "account_id": source["id"],
                        "category_id": category["id"],
                        "description": payload.description or f"Transfer to {destination['name']}",
                        "amount": payload.amount,
                        "type": TransactionType.TRANSFER_OUT,
                        "transaction_at": payload.date,
                        "transfer_group_id": group_id,
                    },
                    {
                        "account_id": destination["id"],
                        "category_id": category["id"],
                        "description": payload.description or f"Transfer from {source['name']}",
                        "amount": payload.amount,
                        "type": TransactionType.TRANSFER_IN,
                        "transaction_at": payload.date,
                        "transfer_group_id": group_id,
                    },
                ],
            )
        logger.info("transfer %s: %s from %s to %s", group_id, payload.amount, source["id"], destination["id"])
        return {"transferGroupId": group_id, "outgoing": outgoing, "incoming": incoming}
