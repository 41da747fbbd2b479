from collections.abc import Callable, Iterable
from threading import Lock

from deposit_pipeline.core.logging import get_logger

logger = get_logger(__name__)


class DeduplicationTracker:
    """Run-scoped set of txids already accepted or already in storage.

    ``lock`` must be held around any check-then-add sequence.
    """

    def __init__(self) -> None:
        self._seen: set[str] = set()
        self.lock = Lock()

    def __contains__(self, txid: object) -> bool:
        return txid in self._seen

    def __len__(self) -> int:
        return len(self._seen)

    def add(self, txid: str) -> None:
        self._seen.add(txid)

    def release(self, txid: str) -> None:
        with self.lock:
            self._seen.discard(txid)

    def merge(self, txids: Iterable[str]) -> None:
        with self.lock:
            self._seen.update(txids)

    def reconcile(
        self, txids: Iterable[str], lookup: Callable[[list[str]], set[str]]
    ) -> set[str]:
        # only ask storage about txids we have not settled yet
        pending = sorted({txid for txid in txids if txid not in self._seen})
        if not pending:
            return set()

        existing = lookup(pending)
        if existing:
            self.merge(existing)
            logger.debug("dedup_reconciled", looked_up=len(pending), already_stored=len(existing))
        return existing
