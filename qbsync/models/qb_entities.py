"""
Normalized QuickBooks entity tables.

One table per synced entity type, each keyed by (realm_id, qb_id). The full
QuickBooks payload is kept in raw_data so fields we do not map explicitly are
never lost.
"""
import uuid
from sqlalchemy import (
    Column, String, DateTime, Date, Integer, Boolean, Numeric, Text, Uuid,
    UniqueConstraint, func,
)
from sqlalchemy.orm import declared_attr
from qbsync.core.database import Base, JSONType


class QBEntityMixin:
    """Columns shared by every normalized QuickBooks entity"""

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    realm_id = Column(String, nullable=False, index=True)
    qb_id = Column(String, nullable=False)
    sync_token = Column(String, nullable=True)  # QBO optimistic-concurrency token

    qb_created_at = Column(DateTime, nullable=True)
    qb_updated_at = Column(DateTime, nullable=True)
    raw_data = Column(JSONType, nullable=True)

    last_synced_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=func.now())
    updated_at = Column(DateTime, default=func.now(), onupdate=func.now())

    @declared_attr
    def __table_args__(cls):
        return (UniqueConstraint("realm_id", "qb_id", name=f"uq_{cls.__tablename__}_realm_qb_id"),)


class QBCustomer(QBEntityMixin, Base):
    __tablename__ = "qb_customers"

    display_name = Column(String, nullable=True)
    given_name = Column(String, nullable=True)
    family_name = Column(String, nullable=True)
    company_name = Column(String, nullable=True)
    fully_qualified_name = Column(String, nullable=True)
    primary_email = Column(String, nullable=True)
    primary_phone = Column(String, nullable=True)
    mobile_phone = Column(String, nullable=True)
    billing_addr = Column(JSONType, nullable=True)
    shipping_addr = Column(JSONType, nullable=True)
    notes = Column(Text, nullable=True)
    taxable = Column(Boolean, nullable=True)
    balance = Column(Numeric(14, 2), nullable=True)
    balance_with_jobs = Column(Numeric(14, 2), nullable=True)
    currency_code = Column(String, nullable=True)
    parent_qb_id = Column(String, nullable=True)
    is_job = Column(Boolean, default=False)
    level = Column(Integer, nullable=True)
    is_active = Column(Boolean, default=True)


class QBVendor(QBEntityMixin, Base):
    __tablename__ = "qb_vendors"

    display_name = Column(String, nullable=True)
    given_name = Column(String, nullable=True)
    family_name = Column(String, nullable=True)
    company_name = Column(String, nullable=True)
    primary_email = Column(String, nullable=True)
    primary_phone = Column(String, nullable=True)
    web_addr = Column(String, nullable=True)
    billing_addr = Column(JSONType, nullable=True)
    tax_identifier = Column(String, nullable=True)
    acct_num = Column(String, nullable=True)
    vendor_1099 = Column(Boolean, default=False)
    balance = Column(Numeric(14, 2), nullable=True)
    currency_code = Column(String, nullable=True)
    is_active = Column(Boolean, default=True)


class QBAccount(QBEntityMixin, Base):
    __tablename__ = "qb_accounts"

    name = Column(String, nullable=True)
    fully_qualified_name = Column(String, nullable=True)
    account_type = Column(String, nullable=True)
    account_sub_type = Column(String, nullable=True)
    classification = Column(String, nullable=True)
    acct_num = Column(String, nullable=True)
    description = Column(Text, nullable=True)
    parent_qb_id = Column(String, nullable=True)
    current_balance = Column(Numeric(14, 2), nullable=True)
    current_balance_with_sub_accounts = Column(Numeric(14, 2), nullable=True)
    currency_code = Column(String, nullable=True)
    is_active = Column(Boolean, default=True)


class QBInvoice(QBEntityMixin, Base):
    __tablename__ = "qb_invoices"

    doc_number = Column(String, nullable=True)
    txn_date = Column(Date, nullable=True, index=True)
    due_date = Column(Date, nullable=True)
    customer_qb_id = Column(String, nullable=True, index=True)
    customer_name = Column(String, nullable=True)
    class_qb_id = Column(String, nullable=True)
    total_amount = Column(Numeric(14, 2), nullable=True)
    balance = Column(Numeric(14, 2), nullable=True)
    deposit = Column(Numeric(14, 2), nullable=True)
    home_total_amount = Column(Numeric(14, 2), nullable=True)
    exchange_rate = Column(Numeric(14, 6), nullable=True)
    currency_code = Column(String, nullable=True)
    email_status = Column(String, nullable=True)
    print_status = Column(String, nullable=True)
    customer_memo = Column(Text, nullable=True)
    private_note = Column(Text, nullable=True)
    bill_addr = Column(JSONType, nullable=True)
    line_items = Column(JSONType, nullable=True)
    linked_txn = Column(JSONType, nullable=True)


class QBPayment(QBEntityMixin, Base):
    __tablename__ = "qb_payments"

    txn_date = Column(Date, nullable=True, index=True)
    customer_qb_id = Column(String, nullable=True, index=True)
    customer_name = Column(String, nullable=True)
    deposit_to_account_qb_id = Column(String, nullable=True)
    payment_method_qb_id = Column(String, nullable=True)
    payment_ref_num = Column(String, nullable=True)
    total_amount = Column(Numeric(14, 2), nullable=True)
    unapplied_amount = Column(Numeric(14, 2), nullable=True)
    exchange_rate = Column(Numeric(14, 6), nullable=True)
    currency_code = Column(String, nullable=True)
    private_note = Column(Text, nullable=True)
    line_items = Column(JSONType, nullable=True)
    linked_txn = Column(JSONType, nullable=True)


class QBBill(QBEntityMixin, Base):
    __tablename__ = "qb_bills"

    doc_number = Column(String, nullable=True)
    txn_date = Column(Date, nullable=True, index=True)
    due_date = Column(Date, nullable=True)
    vendor_qb_id = Column(String, nullable=True, index=True)
    vendor_name = Column(String, nullable=True)
    ap_account_qb_id = Column(String, nullable=True)
    total_amount = Column(Numeric(14, 2), nullable=True)
    balance = Column(Numeric(14, 2), nullable=True)
    home_total_amount = Column(Numeric(14, 2), nullable=True)
    exchange_rate = Column(Numeric(14, 6), nullable=True)
    currency_code = Column(String, nullable=True)
    private_note = Column(Text, nullable=True)
    line_items = Column(JSONType, nullable=True)
    linked_txn = Column(JSONType, nullable=True)


class QBCompany(QBEntityMixin, Base):
    __tablename__ = "qb_companies"

    company_name = Column(String, nullable=True)
    legal_name = Column(String, nullable=True)
    company_addr = Column(JSONType, nullable=True)
    legal_addr = Column(JSONType, nullable=True)
    primary_phone = Column(String, nullable=True)
    company_email = Column(String, nullable=True)
    web_addr = Column(String, nullable=True)
    fiscal_year_start_month = Column(Integer, nullable=True)  # 1-12
    country = Column(String, nullable=True)


class QBClass(QBEntityMixin, Base):
    __tablename__ = "qb_classes"

    name = Column(String, nullable=True, index=True)
    fully_qualified_name = Column(String, nullable=True)
    sub_class = Column(Boolean, default=False)
    parent_qb_id = Column(String, nullable=True)
    is_active = Column(Boolean, default=True)


class QBDepartment(QBEntityMixin, Base):
    __tablename__ = "qb_departments"

    name = Column(String, nullable=True)
    fully_qualified_name = Column(String, nullable=True)
    sub_department = Column(Boolean, default=False)
    parent_qb_id = Column(String, nullable=True)
    is_active = Column(Boolean, default=True)


class QBItem(QBEntityMixin, Base):
    __tablename__ = "qb_items"

    name = Column(String, nullable=True)
    fully_qualified_name = Column(String, nullable=True)
    sku = Column(String, nullable=True)
    item_type = Column(String, nullable=True)  # Service, Inventory, NonInventory, ...
    description = Column(Text, nullable=True)
    taxable = Column(Boolean, default=False)
    unit_price = Column(Numeric(14, 4), nullable=True)
    purchase_cost = Column(Numeric(14, 4), nullable=True)
    qty_on_hand = Column(Numeric(14, 4), nullable=True)
    track_qty_on_hand = Column(Boolean, default=False)
    income_account_qb_id = Column(String, nullable=True)
    expense_account_qb_id = Column(String, nullable=True)
    is_active = Column(Boolean, default=True)


class QBEmployee(QBEntityMixin, Base):
    __tablename__ = "qb_employees"

    display_name = Column(String, nullable=True)
    given_name = Column(String, nullable=True)
    family_name = Column(String, nullable=True)
    primary_email = Column(String, nullable=True)
    primary_phone = Column(String, nullable=True)
    mobile_phone = Column(String, nullable=True)
    employee_number = Column(String, nullable=True)
    hired_date = Column(Date, nullable=True)
    released_date = Column(Date, nullable=True)
    billable_time = Column(Boolean, default=False)
    bill_rate = Column(Numeric(14, 2), nullable=True)
    is_active = Column(Boolean, default=True)
