from dataclasses import dataclass

from .config import Settings
from .mailer import Mailer, get_mailer
from .persistence import Persistence, get_persistence
from .receipts import ReceiptStorage, get_receipt_storage
from .services.auth import AuthService
from .services.balance import BalanceEngine
from .services.transactions import TransactionService
from .services.transfers import TransferService


@dataclass
class Services:
    settings: Settings
    persistence: Persistence
    engine: BalanceEngine
    transactions: TransactionService
    transfers: TransferService
    auth: AuthService
    receipts: ReceiptStorage
    mailer: Mailer

    def close(self) -> None:
        self.persistence.close()


def build_services(
    settings: Settings,
    *,
    persistence: Persistence | None = None,
    receipts: ReceiptStorage | None = None,
    mailer: Mailer | None = None,
) -> Services:
    """Wire the ledger services; any collaborator passed in replaces the configured one."""
    persistence = persistence or get_persistence(settings)
    receipts = receipts or get_receipt_storage(settings)
    mailer = mailer or get_mailer(settings)
    engine = BalanceEngine(persistence)
    return Services(
        settings=settings,
        persistence=persistence,
        engine=engine,
        transactions=TransactionService(persistence, engine, receipts),
        transfers=TransferService(persistence, engine),
        auth=AuthService(persistence, settings),
        receipts=receipts,
        mailer=mailer,
    )
