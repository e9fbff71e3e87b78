# Overview: Typed error taxonomy shared by the stock ledger, account ledger and document handlers.

"""
Stockbook error taxonomy.

Every error carries a machine-readable `code` and an `http_status` so callers
(routes, CLI) can map it to a response without string matching.

- Stock and ledger invariant violations are never swallowed: they abort the
  surrounding unit of work and propagate to the caller.
- Notification dedup races are resolved by upsert and never surface here.
"""

from __future__ import annotations

from decimal import Decimal


class StockbookError(Exception):
    """Base class for all domain errors."""

    code: str = "STOCKBOOK_ERROR"
    http_status: int = 400

    def to_dict(self) -> dict:
        return {"error": str(self), "code": self.code}


class ReferentialGapError(StockbookError):
    """A document references an account, product or warehouse that does not exist."""

    code: str = "REFERENTIAL_GAP"
    http_status: int = 404

    def __init__(self, kind: str, identifier):
        self.kind = kind
        self.identifier = identifier
        super().__init__(f"{kind} {identifier!r} not found")

    def to_dict(self) -> dict:
        data = super().to_dict()
        data.update({"kind": self.kind, "identifier": self.identifier})
        return data


# =============================================================================
# STOCK
# =============================================================================

class StockError(StockbookError):
    code: str = "STOCK_ERROR"


class InsufficientStockError(StockError):
    """Requested quantity exceeds what the candidate lot(s) hold."""

    code: str = "INSUFFICIENT_STOCK"
    http_status: int = 409

    def __init__(
        self,
        product_id: int,
        requested: Decimal,
        available: Decimal,
        *,
        warehouse_id: int | None = None,
        batch: str | None = None,
        product_name: str | None = None,
    ):
        self.product_id = product_id
        self.warehouse_id = warehouse_id
        self.batch = batch
        self.product_name = product_name
        self.requested = Decimal(requested)
        self.available = Decimal(available)

        message = "Insufficient stock for product"
        if product_name:
            message += f" '{product_name}'"
        else:
            message += f" {product_id}"
        message += f". Requested: {self.requested}, Available: {self.available}"
        super().__init__(message)

    def to_dict(self) -> dict:
        data = super().to_dict()
        data.update({
            "product_id": self.product_id,
            "warehouse_id": self.warehouse_id,
            "batch": self.batch,
            "requested": str(self.requested),
            "available": str(self.available),
        })
        return data


# =============================================================================
# LEDGER
# =============================================================================

class LedgerError(StockbookError):
    code: str = "LEDGER_ERROR"


class InvalidEntryError(LedgerError):
    """A single journal entry is malformed (both sides set, negative amount, ...)."""

    code: str = "INVALID_ENTRY"


class UnbalancedLedgerError(LedgerError):
    """Debits and credits of a posting batch differ. Always a programming error."""

    code: str = "UNBALANCED_LEDGER"
    http_status: int = 500

    def __init__(self, debits: Decimal, credits: Decimal, entries: list | None = None):
        self.debits = debits
        self.credits = credits
        self.entries = entries or []
        super().__init__(f"Unbalanced posting: debits={debits}, credits={credits}")


class ImmutableLedgerError(LedgerError):
    """Journal rows are append-only."""

    code: str = "IMMUTABLE_LEDGER"
    http_status: int = 500


# =============================================================================
# DOCUMENTS
# =============================================================================

class DocumentError(StockbookError):
    code: str = "DOCUMENT_ERROR"


class InvalidTransitionError(DocumentError):
    code: str = "INVALID_TRANSITION"
    http_status: int = 409

    def __init__(self, document_type: str, document_id: int, from_status: str, to_status: str):
        self.document_type = document_type
        self.document_id = document_id
        self.from_status = from_status
        self.to_status = to_status
        super().__init__(
            f"Cannot move {document_type} {document_id} from '{from_status}' to '{to_status}'"
        )


class DuplicatePostingError(DocumentError):
    """The document has already been posted to the stock and account ledgers."""

    code: str = "DUPLICATE_POSTING"
    http_status: int = 409

    def __init__(self, document_type: str, document_id: int, status: str):
        self.document_type = document_type
        self.document_id = document_id
        self.status = status
        super().__init__(f"{document_type} {document_id} already posted (status: {status})")


class ReturnLimitExceededError(DocumentError):
    code: str = "RETURN_LIMIT_EXCEEDED"
    http_status: int = 422

    def __init__(self, product_id: int, requested: Decimal, returnable: Decimal):
        self.product_id = product_id
        self.requested = Decimal(requested)
        self.returnable = Decimal(returnable)
        super().__init__(
            f"Cannot return {self.requested} units of product {product_id}. "
            f"Returnable: {self.returnable}"
        )


class QuotationConversionError(DocumentError):
    code: str = "QUOTATION_CONVERSION"
    http_status: int = 409
