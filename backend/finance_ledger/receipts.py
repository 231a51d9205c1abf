"""Receipt object storage.

Receipts live outside the ledger, keyed by ``<user id>/<transaction id>``.
The ledger never waits on or rolls back because of this store.
"""

import json
import logging
from dataclasses import dataclass
from pathlib import Path
from threading import Lock
from uuid import UUID

from .config import Settings

logger = logging.getLogger(__name__)


def receipt_key(user_id: UUID, transaction_id: UUID) -> str:
    return f"{user_id}/{transaction_id}"


@dataclass(frozen=True)
class StoredReceipt:
    key: str
    filename: str
    content_type: str
    content: bytes

    @property
    def size(self) -> int:
        return len(self.content)


class ReceiptStorage:
    def upload(self, key: str, content: bytes, filename: str, content_type: str) -> StoredReceipt:
        raise NotImplementedError

    def download(self, key: str) -> StoredReceipt | None:
        raise NotImplementedError

    def delete(self, key: str) -> bool:
        raise NotImplementedError


class InMemoryReceiptStorage(ReceiptStorage):
    def __init__(self) -> None:
        self._objects: dict[str, StoredReceipt] = {}
        self._lock = Lock()

    def upload(self, key: str, content: bytes, filename: str, content_type: str) -> StoredReceipt:
        receipt = StoredReceipt(key=key, filename=filename, content_type=content_type, content=content)
        with self._lock:
            self._objects[key] = receipt
        return receipt

    def download(self, key: str) -> StoredReceipt | None:
        with self._lock:
            return self._objects.get(key)

    def delete(self, key: str) -> bool:
        with self._lock:
            return self._objects.pop(key, None) is not None


class LocalReceiptStorage(ReceiptStorage):
    """Stores each receipt as ``<root>/<key>`` with a ``.meta.json`` sidecar."""

    def __init__(self, root: Path) -> None:
        self.root = root

    def _paths(self, key: str) -> tuple[Path, Path]:
        path = self.root / key
        if not path.resolve().is_relative_to(self.root.resolve()):
            raise ValueError(f"receipt key escapes the storage root: {key!r}")
        return path, path.with_name(f"{path.name}.meta.json")

    def upload(self, key: str, content: bytes, filename: str, content_type: str) -> StoredReceipt:
        path, meta_path = self._paths(key)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(content)
        meta_path.write_text(json.dumps({"filename": filename, "contentType": content_type}), encoding="utf-8")
        return StoredReceipt(key=key, filename=filename, content_type=content_type, content=content)

    def download(self, key: str) -> StoredReceipt | None:
        path, meta_path = self._paths(key)
        if not path.exists():
            return None
        meta = {}
        if meta_path.exists():
            try:
                meta = json.loads(meta_path.read_text(encoding="utf-8"))
            except (OSError, json.JSONDecodeError, UnicodeDecodeError):
                logger.warning("unreadable receipt metadata for %s", key)
        return StoredReceipt(
            key=key,
            filename=meta.get("filename", path.name),
            content_type=meta.get("contentType", "application/octet-stream"),
            content=path.read_bytes(),
        )

    def delete(self, key: str) -> bool:
        path, meta_path = self._paths(key)
        existed = path.exists()
        path.unlink(missing_ok=True)
        meta_path.unlink(missing_ok=True)
        return existed


def get_receipt_storage(settings: Settings) -> ReceiptStorage:
    if settings.receipt_storage == "memory":
        return InMemoryReceiptStorage()
    return LocalReceiptStorage(settings.receipts_dir)
