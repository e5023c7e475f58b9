from datetime import date, datetime
from decimal import Decimal
from typing import List, Optional
from uuid import UUID
from pydantic import BaseModel, ConfigDict, Field


class ReconciliationResponse(BaseModel):
    id: UUID
    realm_id: Optional[str]
    apartment_name: Optional[str]
    apartment_category: Optional[str]
    invoice_month: date
    qb_customer_id: Optional[UUID]
    lt_amount: Decimal
    qb_invoice_ids: List[str]
    qb_invoices_count: int
    qb_total_amount: Decimal
    qb_total_balance: Decimal
    amount_difference: Optional[Decimal]
    match_status: str
    last_reconciled_at: Optional[datetime]

    model_config = ConfigDict(from_attributes=True)


class InvoiceResponse(BaseModel):
    id: UUID
    realm_id: str
    qb_id: str
    sync_token: Optional[str]
    doc_number: Optional[str]
    txn_date: Optional[date]
    customer_qb_id: Optional[str]
    total_amount: Optional[Decimal]
    balance: Optional[Decimal]

    model_config = ConfigDict(from_attributes=True)


class CreateInvoiceRequest(BaseModel):
    """Create the missing QuickBooks invoice for a reconciliation record."""
    reconciliation_id: UUID = Field(..., description="Reconciliation record in no_qb_invoice state")


class CreateInvoiceResponse(BaseModel):
    success: bool
    invoice: InvoiceResponse
    reconciliation: ReconciliationResponse


class BulkUpdateRequest(BaseModel):
    """Redistribute a corrected total across existing invoices."""
    reconciliation_id: UUID = Field(..., description="Reconciliation record in amount_mismatch state")
    invoice_ids: List[UUID] = Field(..., min_length=1, description="Local invoice IDs to update")
    lt_amount: Decimal = Field(..., gt=0, description="Target total across the invoices")


class InvoiceUpdateResult(BaseModel):
    id: str
    qb_id: str
    success: bool
    skipped: bool = False
    new_amount: Optional[float] = None
    error: Optional[str] = None


class BulkUpdateResponse(BaseModel):
    success: bool
    updated_count: int
    failed_count: int
    results: List[InvoiceUpdateResult]
    message: str
    reconciliation: ReconciliationResponse
