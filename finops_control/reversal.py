"""
Reversal Engine

Reverses a posted journal entry by posting its mirror image. The original is
never edited beyond the reversal link; flipping its ``reversed`` flag is a
compare-and-set inside the same storage transaction that saves the mirror, so
concurrent reversals of one transaction produce exactly one reversal.
"""

import logging
from datetime import datetime, timezone
from typing import Optional

from .audit import AuditLog
from .errors import ConflictError
from .ledger import GeneralLedger, JournalEntry

logger = logging.getLogger("finops.reversal")


class ReversalEngine:
    """Posts mirror entries for reversed transactions"""

    def __init__(self, ledger: GeneralLedger, audit_log: AuditLog):
        self.ledger = ledger
        self.audit_log = audit_log

    def reverse(self, transaction_id: str, actor: str, note: Optional[str] = None) -> str:
        """
        Reverse a journal entry

        Args:
            transaction_id: Transaction to reverse
            actor: User requesting the reversal
            note: Optional comment stored on the mirror entry

        Returns:
            Transaction id of the reversal entry

        Raises:
            NotFoundError: If the transaction doesn't exist
            ConflictError: If the transaction is already reversed
        """
        storage = self.ledger.storage

        with storage.atomic():
            original = self.ledger.get_entry(transaction_id)
            if original.reversed:
                raise ConflictError(
                    f"Journal entry {transaction_id} already reversed by {original.reversed_by}"
                )

            now = datetime.now(timezone.utc)
            mirror = JournalEntry(
                id=self.ledger.next_transaction_id(),
                created_at=now,
                updated_at=now,
                office_id=original.office_id,
                transaction_date=now.date(),
                currency_code=original.currency_code,
                lines=[line.mirrored() for line in original.lines],
                reversal_of=original.id,
                reference_number=original.reference_number,
                comments=note or f"Reversal of {original.id}",
                manual_entry=original.manual_entry,
                created_by=actor,
            )
            self.ledger.save_entry(mirror)

            # Losing a race here rolls back the mirror as well
            if not storage.compare_and_set(
                GeneralLedger.TABLE, original.id,
                {'reversed': False},
                {'reversed': True, 'reversed_by': mirror.id, 'updated_at': now.isoformat()},
            ):
                raise ConflictError(f"Journal entry {transaction_id} already reversed")

            self.audit_log.record(
                actor=actor,
                action_name="REVERSE",
                entity_name="JOURNALENTRY",
                resource_id=original.id,
                office_id=original.office_id,
                changes={'reversed': True, 'reversed_by': mirror.id},
                details={'reversal_transaction_id': mirror.id, 'note': note},
            )

        logger.info(f"Reversed journal entry {transaction_id} with {mirror.id}")
        return mirror.id
