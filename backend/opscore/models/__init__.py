from .auth import User, AuditLogEntry, LoginAttempt, ImmutableRecordError
from .customers import Customer
from .orders import Order, OrderItem
from .finance import Invoice, FinancialLedgerEntry, DocumentSequence
from .production import MaterialIntakeRecord, ProductionBatch, BatchInput, BatchRollback
from .inventory import InventoryTransaction, PendingInventoryWrite
from .integrity import DataIntegrityIssue, DataIntegrityAlert, SystemNotification, AppendOnlyViolation

__all__ = [
    'User', 'AuditLogEntry', 'LoginAttempt', 'ImmutableRecordError',
    'Customer',
    'Order', 'OrderItem',
    'Invoice', 'FinancialLedgerEntry', 'DocumentSequence',
    'MaterialIntakeRecord', 'ProductionBatch', 'BatchInput', 'BatchRollback',
    'InventoryTransaction', 'PendingInventoryWrite',
    'DataIntegrityIssue', 'DataIntegrityAlert', 'SystemNotification', 'AppendOnlyViolation',
]
