import uuid
from sqlalchemy import Column, String, DateTime, Date, Integer, Numeric, Uuid, Index, func
from qbsync.core.database import Base, JSONType

MATCH_STATUSES = ("matched", "amount_mismatch", "no_qb_invoice", "multiple_invoices")

class Reconciliation(Base):
    """Authoritative rent amount vs. linked QuickBooks invoices for one apartment and month"""
    __tablename__ = "qb_reconciliation"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    realm_id = Column(String, nullable=True, index=True)

    apartment_id = Column(String, nullable=True, index=True)
    apartment_name = Column(String, nullable=True)
    apartment_category = Column(String, nullable=True)  # maps to a QuickBooks class by name
    invoice_month = Column(Date, nullable=False, index=True)  # first day of the billing period

    qb_customer_id = Column(Uuid, nullable=True, index=True)  # FK to qb_customers.id

    # Authoritative amount from the lease system
    lt_amount = Column(Numeric(14, 2), nullable=False)

    # Linked invoices (qb_invoices.id as strings) and their aggregates
    qb_invoice_ids = Column(JSONType, nullable=False, default=list)
    qb_invoices_count = Column(Integer, default=0, nullable=False)
    qb_total_amount = Column(Numeric(14, 2), default=0, nullable=False)
    qb_total_balance = Column(Numeric(14, 2), default=0, nullable=False)
    amount_difference = Column(Numeric(14, 2), nullable=True)

    match_status = Column(String, nullable=False, default="no_qb_invoice", index=True)
    last_reconciled_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, default=func.now())
    updated_at = Column(DateTime, default=func.now(), onupdate=func.now())

    __table_args__ = (
        Index("idx_reconciliation_customer_month", "qb_customer_id", "invoice_month"),
    )
