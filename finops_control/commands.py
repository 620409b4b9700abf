"""
Command Handler Registry

Every state-changing operation the control plane accepts is registered here
under an operation name, together with the action and entity names that form
its permission code and the pydantic model its payload must satisfy. The
registry is the tagged union of known payloads: an unknown operation or a
payload that does not fit its model is a ValidationError before anything
else happens.
"""

from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from typing import Any, Callable, Dict, List, Literal, Optional, Type

from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError

from .errors import ValidationError
from .ledger import ChartOfAccounts, GLAccountType, LedgerEntryBuilder, LineInput
from .reversal import ReversalEngine


@dataclass
class CommandContext:
    """Who is running a command and on whose behalf"""
    maker: str
    office_id: Optional[str] = None
    checker: Optional[str] = None
    pending_command_id: Optional[int] = None


@dataclass
class Command:
    """A submitted command before it is resolved"""
    operation: str
    payload: Dict[str, Any]
    maker: str
    office_id: Optional[str] = None


@dataclass
class CommandHandler:
    """
    Registered operation

    ``execute`` receives the parsed payload model and the context and returns
    a JSON-friendly result dict; ``resource_id`` in that dict names the
    affected resource.
    """
    operation: str
    action_name: str
    entity_name: str
    grouping: str
    payload_schema: Type[BaseModel]
    execute: Callable[[Any, CommandContext], Dict[str, Any]]

    @property
    def permission_code(self) -> str:
        return f"{self.action_name}_{self.entity_name}"


def _describe_pydantic_errors(error: PydanticValidationError) -> str:
    parts = []
    for item in error.errors():
        location = ".".join(str(p) for p in item.get('loc', ())) or "payload"
        parts.append(f"{location}: {item.get('msg')}")
    return "; ".join(parts)


class CommandRegistry:
    """Operation name -> handler"""

    def __init__(self):
        self._handlers: Dict[str, CommandHandler] = {}

    def register(self, handler: CommandHandler) -> None:
        if handler.operation in self._handlers:
            raise ValueError(f"Operation '{handler.operation}' is already registered")
        self._handlers[handler.operation] = handler

    def resolve(self, operation: str) -> CommandHandler:
        handler = self._handlers.get(operation)
        if handler is None:
            raise ValidationError(f"Unknown operation '{operation}'")
        return handler

    def is_registered(self, operation: str) -> bool:
        return operation in self._handlers

    def parse_payload(self, handler: CommandHandler, payload: Any) -> BaseModel:
        """Validate a raw payload against the handler's model"""
        if not isinstance(payload, dict):
            raise ValidationError(f"Payload for '{handler.operation}' must be an object")
        try:
            return handler.payload_schema.model_validate(payload)
        except PydanticValidationError as e:
            raise ValidationError(
                f"Invalid payload for '{handler.operation}': {_describe_pydantic_errors(e)}"
            )


# Built-in payload models

class _Payload(BaseModel):
    model_config = ConfigDict(extra="forbid")


class JournalLinePayload(_Payload):
    gl_account_id: str
    amount: Decimal
    comments: Optional[str] = None


class PaymentDetailsPayload(_Payload):
    payment_type_id: Optional[str] = None
    account_number: Optional[str] = None
    check_number: Optional[str] = None
    routing_code: Optional[str] = None
    receipt_number: Optional[str] = None
    bank_number: Optional[str] = None


class CreateJournalEntryPayload(_Payload):
    office_id: str
    transaction_date: date = Field(default_factory=date.today)
    currency_code: str
    debits: List[JournalLinePayload]
    credits: List[JournalLinePayload]
    reference_number: Optional[str] = None
    comments: Optional[str] = None
    payment_details: Optional[PaymentDetailsPayload] = None


class ReverseJournalEntryPayload(_Payload):
    transaction_id: str
    note: Optional[str] = None


class CreateGLAccountPayload(_Payload):
    gl_code: str
    name: str
    account_type: Literal["asset", "liability", "equity", "income", "expense"]
    manual_entries_allowed: bool = True
    description: Optional[str] = None


def register_ledger_handlers(registry: CommandRegistry, builder: LedgerEntryBuilder,
                             reversal: ReversalEngine, chart: ChartOfAccounts) -> None:
    """Register the accounting operations"""

    def create_journal_entry(payload: CreateJournalEntryPayload, ctx: CommandContext) -> Dict[str, Any]:
        transaction_id = builder.post_entry(
            office_id=payload.office_id,
            transaction_date=payload.transaction_date,
            currency_code=payload.currency_code,
            debits=[LineInput(l.gl_account_id, l.amount, l.comments) for l in payload.debits],
            credits=[LineInput(l.gl_account_id, l.amount, l.comments) for l in payload.credits],
            actor=ctx.maker,
            reference_number=payload.reference_number,
            comments=payload.comments,
            payment_details=(payload.payment_details.model_dump(exclude_none=True)
                             if payload.payment_details else None),
        )
        return {'resource_id': transaction_id, 'transaction_id': transaction_id}

    def reverse_journal_entry(payload: ReverseJournalEntryPayload, ctx: CommandContext) -> Dict[str, Any]:
        reversal_id = reversal.reverse(payload.transaction_id, actor=ctx.maker, note=payload.note)
        return {
            'resource_id': payload.transaction_id,
            'transaction_id': payload.transaction_id,
            'reversal_transaction_id': reversal_id,
        }

    def create_gl_account(payload: CreateGLAccountPayload, ctx: CommandContext) -> Dict[str, Any]:
        account = chart.create_account(
            gl_code=payload.gl_code,
            name=payload.name,
            account_type=GLAccountType(payload.account_type),
            actor=ctx.maker,
            manual_entries_allowed=payload.manual_entries_allowed,
            description=payload.description,
        )
        return {'resource_id': account.id, 'gl_code': account.id}

    registry.register(CommandHandler(
        operation="create_journal_entry",
        action_name="CREATE",
        entity_name="JOURNALENTRY",
        grouping="accounting",
        payload_schema=CreateJournalEntryPayload,
        execute=create_journal_entry,
    ))
    registry.register(CommandHandler(
        operation="reverse_journal_entry",
        action_name="REVERSE",
        entity_name="JOURNALENTRY",
        grouping="accounting",
        payload_schema=ReverseJournalEntryPayload,
        execute=reverse_journal_entry,
    ))
    registry.register(CommandHandler(
        operation="create_gl_account",
        action_name="CREATE",
        entity_name="GLACCOUNT",
        grouping="accounting",
        payload_schema=CreateGLAccountPayload,
        execute=create_gl_account,
    ))
