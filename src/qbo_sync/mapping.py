"""
Field mapping between QuickBooks records and internal rows.

Pull direction: validated QBO models → row dicts ready for upsert.
Push direction: row dicts → QBO JSON payloads.

Foreign keys arrive already resolved; a missing required reference raises
UnresolvedReferenceError so the caller can skip just that record.
"""

from datetime import date
from typing import Any

from qbo_sync.coercion import parse_amount, parse_int
from qbo_sync.errors import UnresolvedReferenceError
from qbo_sync.models import (
    QBAddress,
    QBCustomer,
    QBInvoice,
    QBInvoiceLine,
    QBItem,
    QBPayment,
)


# =============================================================================
# Shared helpers
# =============================================================================

def address_to_dict(addr: QBAddress | None) -> dict[str, Any] | None:
    """QBO address → internal address dict."""
    if addr is None:
        return None
    return {
        "line1": addr.line1,
        "line2": addr.line2,
        "city": addr.city,
        "state": addr.country_sub_division_code,
        "postal_code": addr.postal_code,
        "country": addr.country,
    }


def dict_to_address(addr: dict[str, Any] | None) -> dict[str, Any] | None:
    """Internal address dict → QBO address payload, omitting empty fields."""
    if not addr:
        return None
    payload = {
        "Line1": addr.get("line1"),
        "Line2": addr.get("line2"),
        "City": addr.get("city"),
        "CountrySubDivisionCode": addr.get("state"),
        "PostalCode": addr.get("postal_code"),
        "Country": addr.get("country"),
    }
    payload = {k: v for k, v in payload.items() if v}
    return payload or None


def _sync_fields(record: QBCustomer | QBItem | QBInvoice | QBPayment) -> dict[str, Any]:
    return {
        "qbo_id": record.id,
        "qbo_sync_token": record.sync_token,
        "qbo_created_at": record.meta_data.create_time,
        "qbo_updated_at": record.last_updated,
    }


def _identity(row: dict[str, Any]) -> dict[str, Any]:
    """Id/SyncToken for a sparse update, or nothing for a create."""
    if not row.get("qbo_id"):
        return {}
    return {
        "Id": str(row["qbo_id"]),
        "SyncToken": str(row.get("qbo_sync_token") or "0"),
        "sparse": True,
    }


def _iso(value: date | str | None) -> str | None:
    if value is None:
        return None
    return value.isoformat() if isinstance(value, date) else str(value)


def _drop_none(payload: dict[str, Any]) -> dict[str, Any]:
    return {k: v for k, v in payload.items() if v is not None}


# =============================================================================
# Customers
# =============================================================================

def customer_to_row(customer: QBCustomer) -> dict[str, Any]:
    return {
        **_sync_fields(customer),
        "display_name": customer.name,
        "company_name": customer.company_name,
        "first_name": customer.given_name,
        "last_name": customer.family_name,
        "email": customer.email,
        "phone": customer.phone,
        "billing_address": address_to_dict(customer.bill_addr),
        "shipping_address": address_to_dict(customer.ship_addr),
        "balance": customer.balance or 0.0,
        "notes": customer.notes,
        "is_active": customer.active,
    }


def customer_to_payload(row: dict[str, Any]) -> dict[str, Any]:
    payload = {
        **_identity(row),
        "DisplayName": row.get("display_name"),
        "CompanyName": row.get("company_name"),
        "GivenName": row.get("first_name"),
        "FamilyName": row.get("last_name"),
        "PrimaryEmailAddr": {"Address": row["email"]} if row.get("email") else None,
        "PrimaryPhone": {"FreeFormNumber": row["phone"]} if row.get("phone") else None,
        "BillAddr": dict_to_address(row.get("billing_address")),
        "ShipAddr": dict_to_address(row.get("shipping_address")),
        "Notes": row.get("notes"),
        "Active": row.get("is_active", True),
    }
    return _drop_none(payload)


# =============================================================================
# Items
# =============================================================================

def item_to_row(item: QBItem) -> dict[str, Any]:
    return {
        **_sync_fields(item),
        "name": item.name,
        "sku": item.sku,
        "description": item.description,
        "item_type": (item.type or "Service").lower(),
        "unit_price": item.unit_price,
        "purchase_cost": item.purchase_cost,
        "quantity_on_hand": item.qty_on_hand,
        "is_active": item.active,
    }


def item_to_payload(row: dict[str, Any]) -> dict[str, Any]:
    item_type = (row.get("item_type") or "service").lower()
    qbo_type = {"inventory": "Inventory", "noninventory": "NonInventory"}.get(item_type, "Service")
    payload = {
        **_identity(row),
        "Name": row.get("name"),
        "Sku": row.get("sku"),
        "Description": row.get("description"),
        "Type": qbo_type,
        "UnitPrice": parse_amount(row.get("unit_price")),
        "PurchaseCost": parse_amount(row.get("purchase_cost")),
        "Active": row.get("is_active", True),
    }
    if row.get("income_account_qbo_id"):
        payload["IncomeAccountRef"] = {"value": str(row["income_account_qbo_id"])}
    return _drop_none(payload)


# =============================================================================
# Invoices
# =============================================================================

def invoice_status(total: float, balance: float) -> str:
    """paid / partial / sent from QBO totals."""
    if balance <= 0:
        return "paid"
    if balance < total:
        return "partial"
    return "sent"


def invoice_to_row(invoice: QBInvoice, customer_id: str) -> dict[str, Any]:
    """Invoice header row. Line rows come from `invoice_line_to_row`."""
    subtotal = sum(line.amount or 0.0 for line in invoice.lines if line.is_item_line)
    discount = sum(line.amount or 0.0 for line in invoice.lines if line.is_discount_line)
    tax = invoice.txn_tax_detail.total_tax if invoice.txn_tax_detail else None
    total = invoice.total_amt or 0.0
    balance = invoice.balance if invoice.balance is not None else total
    deposit = invoice.deposit or 0.0

    return {
        **_sync_fields(invoice),
        "customer_id": customer_id,
        "invoice_number": invoice.doc_number,
        "invoice_date": invoice.txn_date,
        "due_date": invoice.due_date,
        "subtotal": round(subtotal, 2),
        # Discount amounts may arrive negative
        "discount_total": round(abs(discount), 2),
        "tax_total": tax or 0.0,
        "total": total,
        "balance_due": balance,
        "amount_paid": round(total - balance, 2),
        "deposit": deposit,
        "status": invoice_status(total, balance),
        "memo": (invoice.customer_memo or {}).get("value"),
        "private_note": invoice.private_note,
        "bill_email": (invoice.bill_email or {}).get("Address"),
        "billing_address": address_to_dict(invoice.bill_addr),
        "shipping_address": address_to_dict(invoice.ship_addr),
        "apply_tax_after_discount": (
            True if invoice.apply_tax_after_discount is None else invoice.apply_tax_after_discount
        ),
        "sales_term_ref": invoice.sales_term_ref.model_dump() if invoice.sales_term_ref else None,
        "custom_fields": {
            f.name: f.string_value or "" for f in invoice.custom_fields if f.name
        } or None,
        "exchange_rate": invoice.exchange_rate or 1.0,
        "is_voided": False,
    }


def line_key(line: QBInvoiceLine, position: int) -> str:
    """Stable per-invoice key for a line."""
    if line.id:
        return line.id
    if line.line_num is not None:
        return f"n{line.line_num}"
    return f"p{position}"


def invoice_line_to_row(
    line: QBInvoiceLine,
    position: int,
    item_id: str | None,
) -> dict[str, Any]:
    detail = line.sales_item_line_detail
    quantity = detail.qty if detail and detail.qty is not None else 1.0
    unit_price = detail.unit_price if detail else None
    return {
        "qbo_line_id": line_key(line, position),
        "line_number": line.line_num if line.line_num is not None else position + 1,
        "detail_type": line.detail_type,
        "item_id": item_id,
        "description": line.description,
        "quantity": quantity,
        "unit_price": unit_price if unit_price is not None else line.amount,
        "total": line.amount or 0.0,
        "service_date": detail.service_date if detail else None,
    }


def invoice_to_payload(
    row: dict[str, Any],
    lines: list[dict[str, Any]],
    customer_qbo_id: str | None,
    item_qbo_ids: dict[str, str],
) -> dict[str, Any]:
    """
    Build an invoice payload.

    Raises:
        UnresolvedReferenceError: if the customer, or any line's item, has
            not been pushed yet, or the invoice has no lines
    """
    if not customer_qbo_id:
        raise UnresolvedReferenceError("customer", row.get("customer_id"))
    if not lines:
        raise UnresolvedReferenceError("line", None)

    qbo_lines = []
    for number, line in enumerate(sorted(lines, key=lambda l: l.get("line_number") or 0), start=1):
        amount = parse_amount(line.get("total")) or 0.0
        if line.get("item_id"):
            item_qbo_id = item_qbo_ids.get(line["item_id"])
            if not item_qbo_id:
                raise UnresolvedReferenceError("item", line["item_id"])
            qbo_lines.append(_drop_none({
                "DetailType": "SalesItemLineDetail",
                "Amount": amount,
                "LineNum": number,
                "Description": line.get("description"),
                "SalesItemLineDetail": _drop_none({
                    "ItemRef": {"value": item_qbo_id},
                    "Qty": parse_amount(line.get("quantity")) or 1.0,
                    "UnitPrice": parse_amount(line.get("unit_price")) or 0.0,
                    "ServiceDate": _iso(line.get("service_date")),
                }),
            }))
        else:
            qbo_lines.append(_drop_none({
                "DetailType": "DescriptionOnly",
                "Amount": amount,
                "LineNum": number,
                "Description": line.get("description") or "Item",
            }))

    payload = {
        **_identity(row),
        "CustomerRef": {"value": customer_qbo_id},
        "DocNumber": row.get("invoice_number"),
        "TxnDate": _iso(row.get("invoice_date")),
        "DueDate": _iso(row.get("due_date")),
        "Line": qbo_lines,
        "CustomerMemo": {"value": row["memo"]} if row.get("memo") else None,
        "PrivateNote": row.get("private_note"),
        "BillEmail": {"Address": row["bill_email"]} if row.get("bill_email") else None,
        "BillAddr": dict_to_address(row.get("billing_address")),
        "ShipAddr": dict_to_address(row.get("shipping_address")),
        "SalesTermRef": row.get("sales_term_ref"),
        "ApplyTaxAfterDiscount": row.get("apply_tax_after_discount"),
    }
    return _drop_none(payload)


# =============================================================================
# Payments
# =============================================================================

def normalize_payment_method(name: str | None) -> str:
    """Map a QBO payment method name onto cash/check/credit_card/ach/other."""
    name = (name or "").lower()
    if "cash" in name:
        return "cash"
    if "check" in name or "cheque" in name:
        return "check"
    if "credit" in name or "card" in name:
        return "credit_card"
    if "ach" in name or "bank" in name:
        return "ach"
    return "other"


def payment_to_row(
    payment: QBPayment,
    customer_id: str,
    invoice_id: str | None,
) -> dict[str, Any]:
    """
    Payment row. A payment whose linked invoice is unknown locally is kept
    as unapplied rather than skipped.
    """
    amount = payment.total_amt or 0.0
    unapplied = invoice_id is None
    return {
        **_sync_fields(payment),
        "customer_id": customer_id,
        "invoice_id": invoice_id,
        "payment_date": payment.txn_date,
        "amount": amount,
        "payment_method": normalize_payment_method(
            payment.payment_method_ref.name if payment.payment_method_ref else None
        ),
        "reference_number": payment.payment_ref_num,
        "notes": payment.private_note,
        "deposit_account_ref": (
            payment.deposit_to_account_ref.model_dump() if payment.deposit_to_account_ref else None
        ),
        "unapplied": unapplied,
        "unapplied_amount": amount if unapplied else payment.unapplied_amt,
        "payment_status": "completed",
    }


def payment_to_payload(
    row: dict[str, Any],
    customer_qbo_id: str | None,
    invoice_qbo_id: str | None,
) -> dict[str, Any]:
    """
    Build a payment payload, applied to its invoice when that invoice
    exists in QBO.

    Raises:
        UnresolvedReferenceError: if the customer has not been pushed, or
            the payment references an invoice that has not been pushed
    """
    if not customer_qbo_id:
        raise UnresolvedReferenceError("customer", row.get("customer_id"))
    if row.get("invoice_id") and not invoice_qbo_id:
        raise UnresolvedReferenceError("invoice", row["invoice_id"])

    amount = parse_amount(row.get("amount")) or 0.0
    payload = {
        **_identity(row),
        "CustomerRef": {"value": customer_qbo_id},
        "TotalAmt": amount,
        "TxnDate": _iso(row.get("payment_date")),
        "PaymentRefNum": row.get("reference_number"),
        "PrivateNote": row.get("notes"),
    }
    if invoice_qbo_id:
        payload["Line"] = [{
            "Amount": amount,
            "LinkedTxn": [{"TxnId": invoice_qbo_id, "TxnType": "Invoice"}],
        }]
    return _drop_none(payload)


def sync_token_of(record: dict[str, Any]) -> str | None:
    """SyncToken from a QBO response, normalised to a string."""
    token = parse_int(record.get("SyncToken"))
    return str(token) if token is not None else None
