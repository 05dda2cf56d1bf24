"""Per-account use cap.

``can_submit`` is checked when a job is submitted, while the counter only moves
in ``confirm_use`` after the result is saved. Two submissions against an
account with one slot left can therefore both pass the check; the store's
capped increment keeps ``use_count`` from ever exceeding ``max_uses``.
"""

from __future__ import annotations

import logging

from image_relay.generation.models import Account
from image_relay.storage.base import PersistentStore

logger = logging.getLogger(__name__)


class QuotaLedger:
    def __init__(self, store: PersistentStore) -> None:
        self.store = store

    def can_submit(self, account: Account) -> bool:
        return account.use_count < account.max_uses

    def remaining(self, account: Account) -> int:
        return account.remaining_uses

    def confirm_use(self, account_id: int) -> bool:
        """Count one use against the account; False when the cap was already reached."""

        applied = self.store.increment_use(account_id)
        if not applied:
            logger.warning("Account %s is already at its use cap; use not counted", account_id)
        return applied
