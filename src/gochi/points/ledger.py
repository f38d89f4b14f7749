"""Append-only record of point transactions."""

from __future__ import annotations

from collections import defaultdict
from collections.abc import Callable

import structlog

from gochi.schemas import PointTransaction

logger = structlog.get_logger()

TransactionCallback = Callable[[PointTransaction], None]


class TransactionLog:
    """Per-process ledger with subscriber notification."""

    def __init__(self) -> None:
        self._entries: list[PointTransaction] = []
        self._by_wallet: dict[str, list[PointTransaction]] = defaultdict(list)
        self._subscribers: list[TransactionCallback] = []

    def append(self, tx: PointTransaction) -> None:
        self._entries.append(tx)
        self._by_wallet[tx.wallet_id].append(tx)
        for callback in list(self._subscribers):
            try:
                callback(tx)
            except Exception:
                logger.exception("transaction_callback_failed", wallet_id=tx.wallet_id)

    def history(self, wallet_id: str) -> list[PointTransaction]:
        return list(self._by_wallet.get(wallet_id, ()))

    def all(self) -> list[PointTransaction]:
        return list(self._entries)

    def balance(self, wallet_id: str) -> int:
        """Net points moved for `wallet_id` by logged transactions."""
        return sum(tx.amount for tx in self._by_wallet.get(wallet_id, ()))

    def subscribe(self, callback: TransactionCallback) -> Callable[[], None]:
        self._subscribers.append(callback)

        def unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return unsubscribe

    def __len__(self) -> int:
        return len(self._entries)
