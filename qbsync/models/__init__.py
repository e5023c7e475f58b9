from .quickbooks_connection import QuickBooksConnection
from .quickbooks_sync_log import QuickBooksSyncLog
from .sync_job import SyncJob, EntityJob
from .sync_event import SyncEvent
from .reconciliation import Reconciliation
from .qb_entities import (
    QBCustomer, QBVendor, QBAccount, QBInvoice, QBPayment, QBBill,
    QBCompany, QBClass, QBDepartment, QBItem, QBEmployee,
)

__all__ = [
    "QuickBooksConnection", "QuickBooksSyncLog", "SyncJob", "EntityJob", "SyncEvent", "Reconciliation",
    "QBCustomer", "QBVendor", "QBAccount", "QBInvoice", "QBPayment", "QBBill",
    "QBCompany", "QBClass", "QBDepartment", "QBItem", "QBEmployee",
]
