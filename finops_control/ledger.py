"""
Double-Entry Ledger Engine

Chart of accounts, journal entry persistence and the Ledger Entry Builder.
The builder is the only way to post an entry and it refuses anything whose
debits and credits do not balance, so the books always balance. Entries are
never deleted; the only mutation allowed afterwards is the reversal link set
by the reversal engine.
"""

import logging
from dataclasses import dataclass
from datetime import date, datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence

from .audit import AuditLog
from .currency import Currency, to_decimal
from .errors import ConflictError, NotFoundError, ValidationError
from .storage import StorageInterface, StorageRecord

logger = logging.getLogger("finops.ledger")


class ImbalanceError(ValidationError):
    """Debits and credits differ by more than the currency tolerance"""

    code = "imbalance"

    def __init__(self, message: str, delta: Decimal):
        super().__init__(message)
        self.delta = delta


class JournalLineRole(Enum):
    """Side of the ledger a line posts to"""
    DEBIT = "debit"
    CREDIT = "credit"

    @property
    def opposite(self) -> 'JournalLineRole':
        return JournalLineRole.CREDIT if self is JournalLineRole.DEBIT else JournalLineRole.DEBIT


class GLAccountType(Enum):
    """Standard accounting account types"""
    ASSET = "asset"           # Debit normal balance
    LIABILITY = "liability"   # Credit normal balance
    EQUITY = "equity"         # Credit normal balance
    INCOME = "income"         # Credit normal balance
    EXPENSE = "expense"       # Debit normal balance


@dataclass
class JournalLine:
    """
    One leg of a journal entry
    Owned by its entry and never shared between entries
    """
    gl_account_id: str
    role: JournalLineRole
    amount: Decimal
    comments: Optional[str] = None

    @property
    def is_debit(self) -> bool:
        return self.role is JournalLineRole.DEBIT

    def mirrored(self) -> 'JournalLine':
        """Same account and amount on the opposite side"""
        return JournalLine(
            gl_account_id=self.gl_account_id,
            role=self.role.opposite,
            amount=self.amount,
            comments=self.comments,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            'gl_account_id': self.gl_account_id,
            'role': self.role.value,
            'amount': str(self.amount),
            'comments': self.comments,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'JournalLine':
        return cls(
            gl_account_id=data['gl_account_id'],
            role=JournalLineRole(data['role']),
            amount=Decimal(data['amount']),
            comments=data.get('comments'),
        )


@dataclass
class LineInput:
    """Debit or credit line as submitted to the builder"""
    gl_account_id: str
    amount: Any
    comments: Optional[str] = None


@dataclass
class JournalEntry(StorageRecord):
    """
    Balanced accounting transaction; ``id`` is the transaction id
    """
    office_id: str
    transaction_date: date
    currency_code: str
    lines: List[JournalLine]
    reversed: bool = False
    reversal_of: Optional[str] = None   # Set on a reversal entry
    reversed_by: Optional[str] = None   # Set on the original once reversed
    reference_number: Optional[str] = None
    comments: Optional[str] = None
    payment_details: Optional[Dict[str, Any]] = None
    manual_entry: bool = True
    created_by: Optional[str] = None

    @property
    def transaction_id(self) -> str:
        return self.id

    @property
    def debits(self) -> List[JournalLine]:
        return [line for line in self.lines if line.is_debit]

    @property
    def credits(self) -> List[JournalLine]:
        return [line for line in self.lines if not line.is_debit]

    @property
    def total_debits(self) -> Decimal:
        return sum((line.amount for line in self.debits), Decimal('0'))

    @property
    def total_credits(self) -> Decimal:
        return sum((line.amount for line in self.credits), Decimal('0'))

    def get_affected_accounts(self) -> List[str]:
        """Account ids touched by this entry, in line order"""
        seen: List[str] = []
        for line in self.lines:
            if line.gl_account_id not in seen:
                seen.append(line.gl_account_id)
        return seen

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'created_at': self.created_at.isoformat(),
            'updated_at': self.updated_at.isoformat(),
            'office_id': self.office_id,
            'transaction_date': self.transaction_date.isoformat(),
            'currency_code': self.currency_code,
            'lines': [line.to_dict() for line in self.lines],
            'reversed': self.reversed,
            'reversal_of': self.reversal_of,
            'reversed_by': self.reversed_by,
            'reference_number': self.reference_number,
            'comments': self.comments,
            'payment_details': self.payment_details,
            'manual_entry': self.manual_entry,
            'created_by': self.created_by,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'JournalEntry':
        data = dict(data)
        data['created_at'] = datetime.fromisoformat(data['created_at'])
        data['updated_at'] = datetime.fromisoformat(data['updated_at'])
        data['transaction_date'] = date.fromisoformat(data['transaction_date'])
        data['lines'] = [JournalLine.from_dict(line) for line in data['lines']]
        return cls(**data)


@dataclass
class GLAccount(StorageRecord):
    """General ledger account; ``id`` is the GL code used as account reference"""
    name: str
    account_type: GLAccountType
    manual_entries_allowed: bool = True
    disabled: bool = False
    description: Optional[str] = None

    @property
    def gl_code(self) -> str:
        return self.id

    def to_dict(self) -> Dict[str, Any]:
        result = super().to_dict()
        result['account_type'] = self.account_type.value
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'GLAccount':
        data = dict(data)
        data['account_type'] = GLAccountType(data['account_type'])
        return super().from_dict(data)


class ChartOfAccounts:
    """GL accounts of the current tenant"""

    TABLE = "gl_accounts"

    def __init__(self, storage: StorageInterface, audit_log: AuditLog):
        self.storage = storage
        self.audit_log = audit_log

    def create_account(self, gl_code: str, name: str, account_type: GLAccountType,
                       actor: str, manual_entries_allowed: bool = True,
                       description: Optional[str] = None) -> GLAccount:
        """
        Create a GL account

        Raises:
            ValidationError: If code or name is blank
            ConflictError: If the code is already in use
        """
        if not gl_code or not gl_code.strip():
            raise ValidationError("GL code is required")
        if not name or not name.strip():
            raise ValidationError("GL account name is required")

        now = datetime.now(timezone.utc)
        account = GLAccount(
            id=gl_code.strip(),
            created_at=now,
            updated_at=now,
            name=name.strip(),
            account_type=account_type,
            manual_entries_allowed=manual_entries_allowed,
            description=description,
        )

        with self.storage.atomic():
            if self.storage.exists(self.TABLE, account.id):
                raise ConflictError(f"GL account {account.id} already exists")
            self.storage.save(self.TABLE, account.id, account.to_dict())
            self.audit_log.record(
                actor=actor,
                action_name="CREATE",
                entity_name="GLACCOUNT",
                resource_id=account.id,
                changes={
                    'gl_code': account.id,
                    'name': account.name,
                    'account_type': account.account_type.value,
                    'manual_entries_allowed': manual_entries_allowed,
                },
            )

        logger.info(f"Created GL account {account.id} ({account.account_type.value})")
        return account

    def get_account(self, gl_code: str) -> GLAccount:
        data = self.storage.load(self.TABLE, gl_code)
        if data is None:
            raise NotFoundError(f"GL account {gl_code} not found")
        return GLAccount.from_dict(data)

    def list_accounts(self, account_type: Optional[GLAccountType] = None) -> List[GLAccount]:
        filters = {'account_type': account_type.value} if account_type else {}
        accounts = [GLAccount.from_dict(d) for d in self.storage.find(self.TABLE, filters)]
        accounts.sort(key=lambda a: a.id)
        return accounts


def _transaction_sort_key(entry: JournalEntry):
    number = entry.id[1:] if entry.id.startswith("T") else entry.id
    return (entry.transaction_date, int(number) if number.isdigit() else 0, entry.id)


class GeneralLedger:
    """
    Journal entry persistence and the ledger read surface
    """

    TABLE = "journal_entries"
    SEQUENCE = "journal_entries"

    def __init__(self, storage: StorageInterface, audit_log: AuditLog):
        self.storage = storage
        self.audit_log = audit_log

    def next_transaction_id(self) -> str:
        return f"T{self.storage.next_sequence(self.SEQUENCE)}"

    def save_entry(self, entry: JournalEntry) -> None:
        self.storage.save(self.TABLE, entry.id, entry.to_dict())

    def find_entry(self, transaction_id: str) -> Optional[JournalEntry]:
        data = self.storage.load(self.TABLE, transaction_id)
        if data is None:
            return None
        return JournalEntry.from_dict(data)

    def get_entry(self, transaction_id: str) -> JournalEntry:
        """Get a journal entry by transaction id"""
        entry = self.find_entry(transaction_id)
        if entry is None:
            raise NotFoundError(f"Journal entry {transaction_id} not found")
        return entry

    def search_entries(
        self,
        office_id: Optional[str] = None,
        gl_account_id: Optional[str] = None,
        from_date: Optional[date] = None,
        to_date: Optional[date] = None,
        manual_only: bool = False,
        offset: int = 0,
        limit: Optional[int] = None
    ) -> List[JournalEntry]:
        """
        Search journal entries

        Args:
            office_id: Only entries of this office
            gl_account_id: Only entries with a line on this account
            from_date: Transaction date lower bound (inclusive)
            to_date: Transaction date upper bound (inclusive)
            manual_only: Exclude system generated entries
            offset: Number of matches to skip
            limit: Maximum number of matches to return

        Returns:
            Entries ordered by transaction date then transaction id
        """
        filters: Dict[str, Any] = {}
        if office_id is not None:
            filters['office_id'] = office_id
        if manual_only:
            filters['manual_entry'] = True

        entries = [JournalEntry.from_dict(d) for d in self.storage.find(self.TABLE, filters)]
        if gl_account_id:
            entries = [e for e in entries if gl_account_id in e.get_affected_accounts()]
        if from_date:
            entries = [e for e in entries if e.transaction_date >= from_date]
        if to_date:
            entries = [e for e in entries if e.transaction_date <= to_date]

        entries.sort(key=_transaction_sort_key)
        entries = entries[offset:]
        if limit is not None:
            entries = entries[:limit]
        return entries

    def describe_transaction(self, transaction_id: str) -> Dict[str, Any]:
        """
        Full view of one transaction: lines, totals, reversal linkage and
        the audit events that reference it
        """
        entry = self.get_entry(transaction_id)
        provenance = self.audit_log.events_for_resource("JOURNALENTRY", transaction_id)
        return {
            'transaction_id': entry.id,
            'office_id': entry.office_id,
            'transaction_date': entry.transaction_date.isoformat(),
            'currency_code': entry.currency_code,
            'reference_number': entry.reference_number,
            'comments': entry.comments,
            'payment_details': entry.payment_details,
            'manual_entry': entry.manual_entry,
            'created_by': entry.created_by,
            'created_at': entry.created_at.isoformat(),
            'lines': [line.to_dict() for line in entry.lines],
            'total_debits': str(entry.total_debits),
            'total_credits': str(entry.total_credits),
            'reversed': entry.reversed,
            'reversal_of': entry.reversal_of,
            'reversed_by': entry.reversed_by,
            'audit': [event.to_dict() for event in provenance],
        }


def _amount_text(currency: Currency, value: Decimal) -> str:
    """Currency precision unless rounding would hide sub-unit digits"""
    text = currency.format(value)
    return text if Decimal(text) == value else format(value, 'f')


class LedgerEntryBuilder:
    """
    Validates and posts balanced journal entries
    """

    def __init__(self, ledger: GeneralLedger, accounts: ChartOfAccounts, audit_log: AuditLog):
        self.ledger = ledger
        self.accounts = accounts
        self.audit_log = audit_log

    def post_entry(
        self,
        office_id: str,
        transaction_date: date,
        currency_code: str,
        debits: Sequence[LineInput],
        credits: Sequence[LineInput],
        actor: str,
        reference_number: Optional[str] = None,
        comments: Optional[str] = None,
        payment_details: Optional[Dict[str, Any]] = None
    ) -> str:
        """
        Validate and persist a journal entry

        Validation runs in a fixed order: both sides non-empty, every amount
        positive, every account resolvable and open to manual entries, then
        debits equal credits within one hundredth of the currency minor unit.

        Args:
            office_id: Office the entry is booked for
            transaction_date: Accounting date
            currency_code: ISO currency code
            debits: Debit lines
            credits: Credit lines
            actor: User posting the entry
            reference_number: Optional external reference
            comments: Optional free text
            payment_details: Optional payment type / cheque / receipt data

        Returns:
            The new transaction id

        Raises:
            ValidationError: Empty side, non-positive amount, unusable account,
                unknown currency, or ImbalanceError naming the delta
            NotFoundError: Unknown account
        """
        if not office_id:
            raise ValidationError("Office is required")

        # (1) both sides present
        if not debits:
            raise ValidationError("At least one debit line is required")
        if not credits:
            raise ValidationError("At least one credit line is required")

        # (2) positive amounts
        lines: List[JournalLine] = []
        for role, side in ((JournalLineRole.DEBIT, debits), (JournalLineRole.CREDIT, credits)):
            for position, line in enumerate(side, start=1):
                amount = to_decimal(line.amount)
                if amount <= 0:
                    raise ValidationError(
                        f"{role.value.capitalize()} line {position} amount must be greater than zero"
                    )
                lines.append(JournalLine(
                    gl_account_id=line.gl_account_id,
                    role=role,
                    amount=amount,
                    comments=line.comments,
                ))

        # (3) resolvable accounts
        for line in lines:
            account = self.accounts.get_account(line.gl_account_id)
            if account.disabled:
                raise ValidationError(f"GL account {account.id} is disabled")
            if not account.manual_entries_allowed:
                raise ValidationError(f"GL account {account.id} does not allow manual entries")

        # (4) balance
        currency = Currency.from_code(currency_code)
        total_debits = sum((l.amount for l in lines if l.is_debit), Decimal('0'))
        total_credits = sum((l.amount for l in lines if not l.is_debit), Decimal('0'))
        delta = total_debits - total_credits
        if abs(delta) > currency.balance_tolerance:
            raise ImbalanceError(
                f"Journal entry imbalance of {_amount_text(currency, abs(delta))} "
                f"(debits {_amount_text(currency, total_debits)}, "
                f"credits {_amount_text(currency, total_credits)})",
                delta=delta,
            )

        now = datetime.now(timezone.utc)
        with self.ledger.storage.atomic():
            entry = JournalEntry(
                id=self.ledger.next_transaction_id(),
                created_at=now,
                updated_at=now,
                office_id=office_id,
                transaction_date=transaction_date,
                currency_code=currency.code,
                lines=lines,
                reference_number=reference_number,
                comments=comments,
                payment_details=payment_details,
                created_by=actor,
            )
            self.ledger.save_entry(entry)

            self.audit_log.record(
                actor=actor,
                action_name="CREATE",
                entity_name="JOURNALENTRY",
                resource_id=entry.id,
                office_id=office_id,
                changes={
                    'office_id': office_id,
                    'transaction_date': transaction_date,
                    'currency_code': currency.code,
                    'amount': currency.format(total_debits),
                    'reference_number': reference_number,
                },
                details={'line_count': len(lines), 'accounts': entry.get_affected_accounts()},
            )

        logger.info(f"Posted journal entry {entry.id} for office {office_id}")
        return entry.id
