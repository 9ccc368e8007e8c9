from .customers import Customer, CustomerTransaction
from .inventory import Product, BundleComponent, StockMovement, DamageLog
from .sales import Invoice, InvoiceLine
from .returns import ReturnRecord, ReturnItem, ReturnExpense, ReturnPayout
from .repairs import Repair, RepairItem
from .settings import PaymentMethod, Courier, DocumentSequence
from .events import DomainEvent

__all__ = [
    'Customer', 'CustomerTransaction',
    'Product', 'BundleComponent', 'StockMovement', 'DamageLog',
    'Invoice', 'InvoiceLine',
    'ReturnRecord', 'ReturnItem', 'ReturnExpense', 'ReturnPayout',
    'Repair', 'RepairItem',
    'PaymentMethod', 'Courier', 'DocumentSequence',
    'DomainEvent',
]
