"""
QuickBooks entity preparers

Pure functions that turn a QuickBooks API entity into a row dict for its
normalized table. Every field is read defensively: a missing or malformed
value becomes None instead of raising, so one odd record never aborts a batch.
"""
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional, Type

from qbsync.core.timeutils import parse_decimal, parse_qb_date, parse_qb_datetime
from qbsync.models.qb_entities import (
    QBAccount, QBBill, QBClass, QBCompany, QBCustomer, QBDepartment,
    QBEmployee, QBInvoice, QBItem, QBPayment, QBVendor,
)

MONTHS = {
    "january": 1, "february": 2, "march": 3, "april": 4, "may": 5, "june": 6,
    "july": 7, "august": 8, "september": 9, "october": 10, "november": 11, "december": 12,
}


@dataclass(frozen=True)
class EntityConfig:
    model: Type
    table: str
    is_transactional: bool  # supports a TxnDate range


ENTITY_CONFIG: Dict[str, EntityConfig] = {
    "CompanyInfo": EntityConfig(QBCompany, "qb_companies", False),
    "Customer": EntityConfig(QBCustomer, "qb_customers", False),
    "Vendor": EntityConfig(QBVendor, "qb_vendors", False),
    "Account": EntityConfig(QBAccount, "qb_accounts", False),
    "Class": EntityConfig(QBClass, "qb_classes", False),
    "Department": EntityConfig(QBDepartment, "qb_departments", False),
    "Item": EntityConfig(QBItem, "qb_items", False),
    "Employee": EntityConfig(QBEmployee, "qb_employees", False),
    "Invoice": EntityConfig(QBInvoice, "qb_invoices", True),
    "Payment": EntityConfig(QBPayment, "qb_payments", True),
    "Bill": EntityConfig(QBBill, "qb_bills", True),
}

SUPPORTED_ENTITY_TYPES = list(ENTITY_CONFIG.keys())


# Field helpers

def _ref_value(entity: Dict[str, Any], key: str) -> Optional[str]:
    ref = entity.get(key)
    if isinstance(ref, dict):
        return ref.get("value")
    return None


def _ref_name(entity: Dict[str, Any], key: str) -> Optional[str]:
    ref = entity.get(key)
    if isinstance(ref, dict):
        return ref.get("name")
    return None


def _nested(entity: Dict[str, Any], key: str, field: str) -> Optional[Any]:
    value = entity.get(key)
    if isinstance(value, dict):
        return value.get(field)
    return None


def _bool(value: Any, default: Optional[bool] = None) -> Optional[bool]:
    if isinstance(value, bool):
        return value
    if isinstance(value, str) and value.lower() in ("true", "false"):
        return value.lower() == "true"
    return default


def _int(value: Any) -> Optional[int]:
    if value is None or isinstance(value, bool):
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _fiscal_month(value: Any) -> Optional[int]:
    """FiscalYearStartMonth arrives as a month name or a number"""
    if isinstance(value, str) and value.strip().lower() in MONTHS:
        return MONTHS[value.strip().lower()]
    month = _int(value)
    if month is not None and 1 <= month <= 12:
        return month
    return None


def _base(entity: Dict[str, Any], realm_id: str) -> Dict[str, Any]:
    qb_id = entity.get("Id")
    return {
        "realm_id": realm_id,
        "qb_id": str(qb_id) if qb_id is not None else None,
        "sync_token": str(entity["SyncToken"]) if entity.get("SyncToken") is not None else None,
        "qb_created_at": parse_qb_datetime(_nested(entity, "MetaData", "CreateTime")),
        "qb_updated_at": parse_qb_datetime(_nested(entity, "MetaData", "LastUpdatedTime")),
        "raw_data": entity,
    }


# Per-type preparers

def prepare_customer(entity: Dict[str, Any], realm_id: str) -> Dict[str, Any]:
    return {
        **_base(entity, realm_id),
        "display_name": entity.get("DisplayName"),
        "given_name": entity.get("GivenName"),
        "family_name": entity.get("FamilyName"),
        "company_name": entity.get("CompanyName"),
        "fully_qualified_name": entity.get("FullyQualifiedName") or entity.get("DisplayName"),
        "primary_email": _nested(entity, "PrimaryEmailAddr", "Address"),
        "primary_phone": _nested(entity, "PrimaryPhone", "FreeFormNumber"),
        "mobile_phone": _nested(entity, "Mobile", "FreeFormNumber"),
        "billing_addr": entity.get("BillAddr"),
        "shipping_addr": entity.get("ShipAddr"),
        "notes": entity.get("Notes"),
        "taxable": _bool(entity.get("Taxable")),
        "balance": parse_decimal(entity.get("Balance")),
        "balance_with_jobs": parse_decimal(entity.get("BalanceWithJobs")),
        "currency_code": _ref_value(entity, "CurrencyRef"),
        "parent_qb_id": _ref_value(entity, "ParentRef"),
        "is_job": _bool(entity.get("Job"), False),
        "level": _int(entity.get("Level")),
        "is_active": _bool(entity.get("Active"), True),
    }


def prepare_vendor(entity: Dict[str, Any], realm_id: str) -> Dict[str, Any]:
    return {
        **_base(entity, realm_id),
        "display_name": entity.get("DisplayName"),
        "given_name": entity.get("GivenName"),
        "family_name": entity.get("FamilyName"),
        "company_name": entity.get("CompanyName"),
        "primary_email": _nested(entity, "PrimaryEmailAddr", "Address"),
        "primary_phone": _nested(entity, "PrimaryPhone", "FreeFormNumber"),
        "web_addr": _nested(entity, "WebAddr", "URI"),
        "billing_addr": entity.get("BillAddr"),
        "tax_identifier": entity.get("TaxIdentifier"),
        "acct_num": entity.get("AcctNum"),
        "vendor_1099": _bool(entity.get("Vendor1099"), False),
        "balance": parse_decimal(entity.get("Balance")),
        "currency_code": _ref_value(entity, "CurrencyRef"),
        "is_active": _bool(entity.get("Active"), True),
    }


def prepare_account(entity: Dict[str, Any], realm_id: str) -> Dict[str, Any]:
    return {
        **_base(entity, realm_id),
        "name": entity.get("Name"),
        "fully_qualified_name": entity.get("FullyQualifiedName"),
        "account_type": entity.get("AccountType"),
        "account_sub_type": entity.get("AccountSubType"),
        "classification": entity.get("Classification"),
        "acct_num": entity.get("AcctNum"),
        "description": entity.get("Description"),
        "parent_qb_id": _ref_value(entity, "ParentRef"),
        "current_balance": parse_decimal(entity.get("CurrentBalance")),
        "current_balance_with_sub_accounts": parse_decimal(entity.get("CurrentBalanceWithSubAccounts")),
        "currency_code": _ref_value(entity, "CurrencyRef"),
        "is_active": _bool(entity.get("Active"), True),
    }


def prepare_invoice(entity: Dict[str, Any], realm_id: str) -> Dict[str, Any]:
    return {
        **_base(entity, realm_id),
        "doc_number": entity.get("DocNumber"),
        "txn_date": parse_qb_date(entity.get("TxnDate")),
        "due_date": parse_qb_date(entity.get("DueDate")),
        "customer_qb_id": _ref_value(entity, "CustomerRef"),
        "customer_name": _ref_name(entity, "CustomerRef"),
        "class_qb_id": _ref_value(entity, "ClassRef"),
        "total_amount": parse_decimal(entity.get("TotalAmt")),
        "balance": parse_decimal(entity.get("Balance")),
        "deposit": parse_decimal(entity.get("Deposit")),
        "home_total_amount": parse_decimal(entity.get("HomeTotalAmt", entity.get("TotalAmt"))),
        "exchange_rate": parse_decimal(entity.get("ExchangeRate")),
        "currency_code": _ref_value(entity, "CurrencyRef"),
        "email_status": entity.get("EmailStatus"),
        "print_status": entity.get("PrintStatus"),
        "customer_memo": _nested(entity, "CustomerMemo", "value"),
        "private_note": entity.get("PrivateNote"),
        "bill_addr": entity.get("BillAddr"),
        "line_items": entity.get("Line"),
        "linked_txn": entity.get("LinkedTxn"),
    }


def prepare_payment(entity: Dict[str, Any], realm_id: str) -> Dict[str, Any]:
    return {
        **_base(entity, realm_id),
        "txn_date": parse_qb_date(entity.get("TxnDate")),
        "customer_qb_id": _ref_value(entity, "CustomerRef"),
        "customer_name": _ref_name(entity, "CustomerRef"),
        "deposit_to_account_qb_id": _ref_value(entity, "DepositToAccountRef"),
        "payment_method_qb_id": _ref_value(entity, "PaymentMethodRef"),
        "payment_ref_num": entity.get("PaymentRefNum"),
        "total_amount": parse_decimal(entity.get("TotalAmt")),
        "unapplied_amount": parse_decimal(entity.get("UnappliedAmt")),
        "exchange_rate": parse_decimal(entity.get("ExchangeRate")),
        "currency_code": _ref_value(entity, "CurrencyRef"),
        "private_note": entity.get("PrivateNote"),
        "line_items": entity.get("Line"),
        "linked_txn": entity.get("LinkedTxn"),
    }


def prepare_bill(entity: Dict[str, Any], realm_id: str) -> Dict[str, Any]:
    return {
        **_base(entity, realm_id),
        "doc_number": entity.get("DocNumber"),
        "txn_date": parse_qb_date(entity.get("TxnDate")),
        "due_date": parse_qb_date(entity.get("DueDate")),
        "vendor_qb_id": _ref_value(entity, "VendorRef"),
        "vendor_name": _ref_name(entity, "VendorRef"),
        "ap_account_qb_id": _ref_value(entity, "APAccountRef"),
        "total_amount": parse_decimal(entity.get("TotalAmt")),
        "balance": parse_decimal(entity.get("Balance")),
        "home_total_amount": parse_decimal(entity.get("HomeTotalAmt", entity.get("TotalAmt"))),
        "exchange_rate": parse_decimal(entity.get("ExchangeRate")),
        "currency_code": _ref_value(entity, "CurrencyRef"),
        "private_note": entity.get("PrivateNote"),
        "line_items": entity.get("Line"),
        "linked_txn": entity.get("LinkedTxn"),
    }


def prepare_company(entity: Dict[str, Any], realm_id: str) -> Dict[str, Any]:
    return {
        **_base(entity, realm_id),
        "company_name": entity.get("CompanyName"),
        "legal_name": entity.get("LegalName"),
        "company_addr": entity.get("CompanyAddr"),
        "legal_addr": entity.get("LegalAddr"),
        "primary_phone": _nested(entity, "PrimaryPhone", "FreeFormNumber"),
        "company_email": _nested(entity, "Email", "Address"),
        "web_addr": _nested(entity, "WebAddr", "URI"),
        "fiscal_year_start_month": _fiscal_month(entity.get("FiscalYearStartMonth")),
        "country": entity.get("Country"),
    }


def prepare_class(entity: Dict[str, Any], realm_id: str) -> Dict[str, Any]:
    return {
        **_base(entity, realm_id),
        "name": entity.get("Name"),
        "fully_qualified_name": entity.get("FullyQualifiedName"),
        "sub_class": _bool(entity.get("SubClass"), False),
        "parent_qb_id": _ref_value(entity, "ParentRef"),
        "is_active": _bool(entity.get("Active"), True),
    }


def prepare_department(entity: Dict[str, Any], realm_id: str) -> Dict[str, Any]:
    return {
        **_base(entity, realm_id),
        "name": entity.get("Name"),
        "fully_qualified_name": entity.get("FullyQualifiedName"),
        "sub_department": _bool(entity.get("SubDepartment"), False),
        "parent_qb_id": _ref_value(entity, "ParentRef"),
        "is_active": _bool(entity.get("Active"), True),
    }


def prepare_item(entity: Dict[str, Any], realm_id: str) -> Dict[str, Any]:
    return {
        **_base(entity, realm_id),
        "name": entity.get("Name"),
        "fully_qualified_name": entity.get("FullyQualifiedName"),
        "sku": entity.get("Sku"),
        "item_type": entity.get("Type"),
        "description": entity.get("Description"),
        "taxable": _bool(entity.get("Taxable"), False),
        "unit_price": parse_decimal(entity.get("UnitPrice")),
        "purchase_cost": parse_decimal(entity.get("PurchaseCost")),
        "qty_on_hand": parse_decimal(entity.get("QtyOnHand")),
        "track_qty_on_hand": _bool(entity.get("TrackQtyOnHand"), False),
        "income_account_qb_id": _ref_value(entity, "IncomeAccountRef"),
        "expense_account_qb_id": _ref_value(entity, "ExpenseAccountRef"),
        "is_active": _bool(entity.get("Active"), True),
    }


def prepare_employee(entity: Dict[str, Any], realm_id: str) -> Dict[str, Any]:
    return {
        **_base(entity, realm_id),
        "display_name": entity.get("DisplayName"),
        "given_name": entity.get("GivenName"),
        "family_name": entity.get("FamilyName"),
        "primary_email": _nested(entity, "PrimaryEmailAddr", "Address"),
        "primary_phone": _nested(entity, "PrimaryPhone", "FreeFormNumber"),
        "mobile_phone": _nested(entity, "Mobile", "FreeFormNumber"),
        "employee_number": entity.get("EmployeeNumber"),
        "hired_date": parse_qb_date(entity.get("HiredDate")),
        "released_date": parse_qb_date(entity.get("ReleasedDate")),
        "billable_time": _bool(entity.get("BillableTime"), False),
        "bill_rate": parse_decimal(entity.get("BillRate")),
        "is_active": _bool(entity.get("Active"), True),
    }


ENTITY_PREPARERS: Dict[str, Callable[[Dict[str, Any], str], Dict[str, Any]]] = {
    "Customer": prepare_customer,
    "Vendor": prepare_vendor,
    "Account": prepare_account,
    "Invoice": prepare_invoice,
    "Payment": prepare_payment,
    "Bill": prepare_bill,
    "CompanyInfo": prepare_company,
    "Class": prepare_class,
    "Department": prepare_department,
    "Item": prepare_item,
    "Employee": prepare_employee,
}


def prepare_entity(entity: Dict[str, Any], entity_type: str, realm_id: str) -> Optional[Dict[str, Any]]:
    """
    Route an entity to its preparer

    Returns:
        Row dict for the entity's table, or None for entity types we do not track
    """
    preparer = ENTITY_PREPARERS.get(entity_type)
    if preparer is None or not isinstance(entity, dict):
        return None
    return preparer(entity, realm_id)


def is_supported(entity_type: str) -> bool:
    return entity_type in ENTITY_CONFIG
