from .catalog import Category, Product, Warehouse, User
from .inventory import StockLot, StockMovement
from .ledger import Account, Transaction, ReferenceType
from .documents import (
    Purchase, PurchaseItem,
    Sale, SaleItem, SaleItemAllocation,
    PurchaseReturn, PurchaseReturnItem,
    SaleReturn, SaleReturnItem,
    Quotation, QuotationItem,
    Payment, Expense, BankTransaction,
    DocumentSequence,
)
from .notifications import Notification, SweepLock

__all__ = [
    'Category', 'Product', 'Warehouse', 'User',
    'StockLot', 'StockMovement',
    'Account', 'Transaction', 'ReferenceType',
    'Purchase', 'PurchaseItem',
    'Sale', 'SaleItem', 'SaleItemAllocation',
    'PurchaseReturn', 'PurchaseReturnItem',
    'SaleReturn', 'SaleReturnItem',
    'Quotation', 'QuotationItem',
    'Payment', 'Expense', 'BankTransaction',
    'DocumentSequence',
    'Notification', 'SweepLock',
]
