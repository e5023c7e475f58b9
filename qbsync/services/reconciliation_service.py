"""
Invoice reconciliation

Compares the authoritative lease amount of a reconciliation record with the
QuickBooks invoices linked to it, and corrects QuickBooks by either creating
the missing invoice or redistributing a corrected total across the existing
ones. Amounts are handled as Decimal and split penny-exactly.
"""
import copy
import logging
import time
from calendar import monthrange
from datetime import timedelta
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Callable, Dict, List, Optional, Sequence
from uuid import UUID

from sqlalchemy.orm import Session

from qbsync.config import AppConfig
from qbsync.core.exceptions import AuthenticationError, NotFoundError, PreconditionError, QuickBooksSyncError
from qbsync.core.timeutils import parse_decimal, utcnow
from qbsync.models.qb_entities import QBClass, QBCustomer, QBInvoice
from qbsync.models.reconciliation import Reconciliation
from qbsync.services import entity_store
from qbsync.services.cdc_service import ClientFactory
from qbsync.services.entity_preparers import prepare_entity
from qbsync.services.quickbooks_client import QuickBooksClient
from qbsync.services.quickbooks_oauth_service import QuickBooksOAuthService

logger = logging.getLogger(__name__)

CENT = Decimal("0.01")


def to_money(value: Any) -> Decimal:
    return Decimal(str(value)).quantize(CENT, rounding=ROUND_HALF_UP)


def calculate_amount_distribution(target: Any, amounts: Sequence[Any]) -> List[Decimal]:
    """
    Split target across invoices in proportion to their current amounts

    Each share is rounded half-up to the cent; the rounding remainder goes to
    the invoice with the largest current amount (lowest index on ties), so
    the result always sums to target exactly and is deterministic. When the
    current amounts sum to zero the split is equal.
    """
    if not amounts:
        return []

    target = to_money(target)
    current = [to_money(amount) for amount in amounts]
    if len(current) == 1:
        return [target]

    total = sum(current, Decimal("0"))
    if total == 0:
        shares = [(target / len(current)).quantize(CENT, rounding=ROUND_HALF_UP) for _ in current]
    else:
        shares = [(target * amount / total).quantize(CENT, rounding=ROUND_HALF_UP) for amount in current]

    designated = max(range(len(current)), key=lambda i: (current[i], -i))
    shares[designated] += target - sum(shares, Decimal("0"))
    return shares


def update_line_item_amounts(lines: List[Dict[str, Any]], old_total: Any, new_total: Any) -> List[Dict[str, Any]]:
    """
    Rescale the SalesItemLineDetail lines of an invoice from old_total to new_total

    Other lines (subtotals, discounts, tax) are left as they are. The sales
    lines are scaled by new_total / old_total and split with
    calculate_amount_distribution, so they are cent-exact among themselves;
    the invoice total only lands on new_total when there are no fixed-amount
    discount or tax lines. UnitPrice is kept consistent with Qty.
    """
    updated = copy.deepcopy(lines or [])
    old_total = to_money(old_total)
    new_total = to_money(new_total)
    if old_total == 0 or abs(old_total - new_total) < CENT:
        return updated

    sales_lines = [line for line in updated if line.get("DetailType") == "SalesItemLineDetail"]
    if not sales_lines:
        return updated

    sales_amounts = [to_money(line.get("Amount") or 0) for line in sales_lines]
    sales_sum = sum(sales_amounts, Decimal("0"))
    target_sales = (sales_sum * new_total / old_total).quantize(CENT, rounding=ROUND_HALF_UP)

    for line, amount in zip(sales_lines, calculate_amount_distribution(target_sales, sales_amounts)):
        line["Amount"] = float(amount)
        detail = line.setdefault("SalesItemLineDetail", {})
        qty = parse_decimal(detail.get("Qty"))
        if qty is None or qty == 1:
            detail["UnitPrice"] = float(amount)
        else:
            # QBO rejects Amount != Qty * UnitPrice; let it derive the price
            detail.pop("UnitPrice", None)
    return updated


class ReconciliationService:
    """Lease amount vs. QuickBooks invoices, and the corrective actions"""

    def __init__(
        self,
        config: AppConfig,
        oauth_service: QuickBooksOAuthService,
        client_factory: Optional[ClientFactory] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.config = config
        self.oauth_service = oauth_service
        self.client_factory = client_factory or (
            lambda db, connection: QuickBooksClient(config.quickbooks, oauth_service, db, connection)
        )
        self.sleep = sleep

    def get(self, db: Session, reconciliation_id: UUID) -> Reconciliation:
        reconciliation = db.get(Reconciliation, reconciliation_id)
        if reconciliation is None:
            raise NotFoundError(f"Reconciliation record {reconciliation_id} not found")
        return reconciliation

    def _client(self, db: Session, realm_id: str) -> QuickBooksClient:
        connection = self.oauth_service.get_token(db, realm_id)
        if connection is None:
            raise AuthenticationError(f"No active QuickBooks connection for realm {realm_id}")
        return self.client_factory(db, connection)

    # Status

    def link_invoices(self, db: Session, reconciliation: Reconciliation) -> Reconciliation:
        """Link the customer's invoices dated in the billing month, then recompute"""
        customer = db.get(QBCustomer, reconciliation.qb_customer_id) if reconciliation.qb_customer_id else None
        if customer is None:
            reconciliation.qb_invoice_ids = []
            return self.recompute(db, reconciliation)

        month_start = reconciliation.invoice_month.replace(day=1)
        month_end = month_start + timedelta(days=monthrange(month_start.year, month_start.month)[1])
        invoices = (
            db.query(QBInvoice)
            .filter(
                QBInvoice.realm_id == customer.realm_id,
                QBInvoice.customer_qb_id == customer.qb_id,
                QBInvoice.txn_date >= month_start,
                QBInvoice.txn_date < month_end,
            )
            .order_by(QBInvoice.txn_date, QBInvoice.doc_number)
            .all()
        )
        reconciliation.realm_id = customer.realm_id
        reconciliation.qb_invoice_ids = [str(invoice.id) for invoice in invoices]
        return self.recompute(db, reconciliation)

    def linked_invoices(self, db: Session, reconciliation: Reconciliation) -> List[QBInvoice]:
        ids = [UUID(str(invoice_id)) for invoice_id in reconciliation.qb_invoice_ids or []]
        if not ids:
            return []
        by_id = {invoice.id: invoice for invoice in db.query(QBInvoice).filter(QBInvoice.id.in_(ids)).all()}
        return [by_id[invoice_id] for invoice_id in ids if invoice_id in by_id]

    def recompute(self, db: Session, reconciliation: Reconciliation) -> Reconciliation:
        """Re-derive totals and match_status from the invoices that still exist"""
        invoices = self.linked_invoices(db, reconciliation)
        total_amount = sum((to_money(invoice.total_amount or 0) for invoice in invoices), Decimal("0"))
        total_balance = sum((to_money(invoice.balance or 0) for invoice in invoices), Decimal("0"))
        difference = total_amount - to_money(reconciliation.lt_amount)

        reconciliation.qb_invoice_ids = [str(invoice.id) for invoice in invoices]
        reconciliation.qb_invoices_count = len(invoices)
        reconciliation.qb_total_amount = total_amount
        reconciliation.qb_total_balance = total_balance
        reconciliation.amount_difference = difference
        if not invoices:
            reconciliation.match_status = "no_qb_invoice"
        elif abs(difference) < self.config.sync.amount_epsilon:
            reconciliation.match_status = "matched"
        else:
            reconciliation.match_status = "amount_mismatch"
        reconciliation.last_reconciled_at = utcnow()

        db.commit()
        db.refresh(reconciliation)
        return reconciliation

    # Corrective actions

    def build_invoice_payload(
        self,
        reconciliation: Reconciliation,
        customer: QBCustomer,
        qb_class: Optional[QBClass] = None,
    ) -> Dict[str, Any]:
        amount = float(to_money(reconciliation.lt_amount))
        month = reconciliation.invoice_month.isoformat()
        apartment = reconciliation.apartment_name or "Apartment"

        detail: Dict[str, Any] = {
            "ItemRef": {
                "value": self.config.quickbooks.default_item_id,
                "name": self.config.quickbooks.default_item_name,
            },
            "Qty": 1,
            "UnitPrice": amount,
        }
        if qb_class is not None:
            detail["ClassRef"] = {"value": qb_class.qb_id, "name": qb_class.name}

        return {
            "CustomerRef": {"value": customer.qb_id, "name": customer.display_name},
            "TxnDate": month,
            "DueDate": month,
            "Line": [{
                "Amount": amount,
                "DetailType": "SalesItemLineDetail",
                "Description": f"{apartment} - {month}",
                "SalesItemLineDetail": detail,
            }],
            "CustomerMemo": {"value": f"Invoice for {apartment} - {month}"},
        }

    def create_invoice(self, db: Session, reconciliation_id: UUID) -> Dict[str, Any]:
        """
        Create the missing QuickBooks invoice for a no_qb_invoice record

        The stored invoice is the one QuickBooks returns, not the payload we sent.
        """
        reconciliation = self.get(db, reconciliation_id)
        if reconciliation.match_status != "no_qb_invoice":
            raise PreconditionError(
                f"Cannot create invoice for match_status '{reconciliation.match_status}'. Expected 'no_qb_invoice'."
            )

        customer = db.get(QBCustomer, reconciliation.qb_customer_id) if reconciliation.qb_customer_id else None
        if customer is None:
            raise NotFoundError("QuickBooks customer not found for reconciliation record")

        qb_class = None
        if reconciliation.apartment_category:
            qb_class = db.query(QBClass).filter(
                QBClass.realm_id == customer.realm_id,
                QBClass.name == reconciliation.apartment_category,
            ).first()

        client = self._client(db, customer.realm_id)
        payload = self.build_invoice_payload(reconciliation, customer, qb_class)
        created = client.create_invoice(payload)

        row = prepare_entity(created, "Invoice", customer.realm_id)
        entity_store.upsert(db, "Invoice", row)
        db.commit()
        invoice = db.query(QBInvoice).filter(
            QBInvoice.realm_id == customer.realm_id,
            QBInvoice.qb_id == row["qb_id"],
        ).one()
        logger.info(f"Created QuickBooks invoice {invoice.qb_id} for reconciliation {reconciliation.id}")

        reconciliation.realm_id = customer.realm_id
        reconciliation.qb_invoice_ids = [*(reconciliation.qb_invoice_ids or []), str(invoice.id)]
        reconciliation = self.recompute(db, reconciliation)
        return {"success": True, "invoice": invoice, "reconciliation": reconciliation}

    def bulk_update_invoices(
        self,
        db: Session,
        reconciliation_id: UUID,
        invoice_ids: List[UUID],
        target_amount: Any,
    ) -> Dict[str, Any]:
        """
        Redistribute target_amount across existing invoices of an amount_mismatch record

        Updates go out one at a time with the configured delay between them.
        A failed invoice does not undo the ones that succeeded; the record is
        recomputed from whatever state QuickBooks ended up in.
        """
        reconciliation = self.get(db, reconciliation_id)
        if reconciliation.match_status != "amount_mismatch":
            raise PreconditionError(
                f"Cannot update invoices for match_status '{reconciliation.match_status}'. Expected 'amount_mismatch'."
            )
        if not invoice_ids:
            raise PreconditionError("invoice_ids must not be empty")
        target = to_money(target_amount)

        ids = [UUID(str(invoice_id)) for invoice_id in invoice_ids]
        by_id = {invoice.id: invoice for invoice in db.query(QBInvoice).filter(QBInvoice.id.in_(ids)).all()}
        missing = [str(invoice_id) for invoice_id in ids if invoice_id not in by_id]
        if missing:
            raise NotFoundError(f"QuickBooks invoices not found: {', '.join(missing)}")

        linked = {str(invoice_id) for invoice_id in reconciliation.qb_invoice_ids or []}
        unlinked = [str(invoice_id) for invoice_id in ids if str(invoice_id) not in linked]
        if unlinked:
            raise PreconditionError(f"Invoices are not linked to this reconciliation record: {', '.join(unlinked)}")
        invoices = [by_id[invoice_id] for invoice_id in ids]

        realm_ids = {invoice.realm_id for invoice in invoices}
        if len(realm_ids) > 1:
            raise PreconditionError("All invoices must be from the same QuickBooks company")
        realm_id = realm_ids.pop()

        client = self._client(db, realm_id)
        distribution = calculate_amount_distribution(target, [invoice.total_amount or 0 for invoice in invoices])
        logger.info(f"Redistributing {target} across {len(invoices)} invoices: {[str(d) for d in distribution]}")

        results = []
        writes = 0
        for invoice, new_amount in zip(invoices, distribution):
            old_amount = to_money(invoice.total_amount or 0)
            result = {"id": str(invoice.id), "qb_id": invoice.qb_id}

            if abs(old_amount - new_amount) < self.config.sync.amount_epsilon:
                logger.info(f"Invoice {invoice.qb_id} already has the correct amount, skipping")
                results.append({**result, "success": True, "skipped": True, "new_amount": float(new_amount)})
                continue

            if writes:
                self.sleep(self.config.sync.bulk_update_delay_seconds)
            writes += 1

            try:
                lines = update_line_item_amounts(invoice.line_items or [], old_amount, new_amount)
                updated = client.update_invoice({
                    "Id": invoice.qb_id,
                    "SyncToken": invoice.sync_token,
                    "Line": lines,
                })
                entity_store.upsert(db, "Invoice", prepare_entity(updated, "Invoice", realm_id))
                db.commit()
                confirmed = parse_decimal(updated.get("TotalAmt"))
                results.append({
                    **result,
                    "success": True,
                    "skipped": False,
                    "new_amount": float(confirmed if confirmed is not None else new_amount),
                })
                logger.info(f"Updated invoice {invoice.qb_id} from {old_amount} to {new_amount}")
            except QuickBooksSyncError as e:
                db.rollback()
                logger.error(f"Error updating invoice {invoice.qb_id}: {e.message}")
                results.append({**result, "success": False, "skipped": False, "error": e.message})

        reconciliation = self.recompute(db, reconciliation)

        updated_count = sum(1 for r in results if r["success"])
        failed_count = len(results) - updated_count
        success = failed_count == 0
        if success:
            message = f"Successfully updated {updated_count} invoice(s)"
        else:
            message = f"Updated {updated_count} of {len(results)} invoice(s)"

        return {
            "success": success,
            "updated_count": updated_count,
            "failed_count": failed_count,
            "results": results,
            "message": message,
            "reconciliation": reconciliation,
        }
