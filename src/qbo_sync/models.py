"""
Pydantic models for QuickBooks Online API payloads.

These models provide type-safe parsing of QBO data and serve as the
intermediate representation before mapping to internal records.
Amount and timestamp fields go through the total coercions in
`qbo_sync.coercion`, so a malformed value becomes None instead of failing
the whole record.
"""

from datetime import date, datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

from qbo_sync.coercion import parse_amount, parse_date, parse_timestamp


class QBOModel(BaseModel):
    """Base for QBO payloads: PascalCase aliases, unknown fields ignored."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class QBRef(QBOModel):
    """Reference to another QBO entity ({"value": "42", "name": "Acme"})."""

    value: str
    name: str | None = None

    @field_validator("value", mode="before")
    @classmethod
    def stringify(cls, v: Any) -> str:
        return str(v)


class QBMetaData(QBOModel):
    create_time: datetime | None = Field(None, alias="CreateTime")
    last_updated_time: datetime | None = Field(None, alias="LastUpdatedTime")

    @field_validator("create_time", "last_updated_time", mode="before")
    @classmethod
    def coerce_timestamp(cls, v: Any) -> datetime | None:
        return parse_timestamp(v)


class QBAddress(QBOModel):
    line1: str | None = Field(None, alias="Line1")
    line2: str | None = Field(None, alias="Line2")
    city: str | None = Field(None, alias="City")
    country_sub_division_code: str | None = Field(None, alias="CountrySubDivisionCode")
    postal_code: str | None = Field(None, alias="PostalCode")
    country: str | None = Field(None, alias="Country")
    lat: str | None = Field(None, alias="Lat")
    long: str | None = Field(None, alias="Long")


class QBEntity(QBOModel):
    """Fields every syncable QBO entity carries."""

    id: str = Field(alias="Id")
    sync_token: str | None = Field(None, alias="SyncToken")
    meta_data: QBMetaData = Field(default_factory=QBMetaData, alias="MetaData")

    @field_validator("id", "sync_token", mode="before")
    @classmethod
    def stringify_ids(cls, v: Any) -> str | None:
        return None if v is None else str(v)

    @property
    def last_updated(self) -> datetime | None:
        return self.meta_data.last_updated_time


class QBCustomer(QBEntity):
    """QBO customer."""

    display_name: str | None = Field(None, alias="DisplayName")
    company_name: str | None = Field(None, alias="CompanyName")
    given_name: str | None = Field(None, alias="GivenName")
    family_name: str | None = Field(None, alias="FamilyName")
    primary_email: dict[str, Any] | None = Field(None, alias="PrimaryEmailAddr")
    primary_phone: dict[str, Any] | None = Field(None, alias="PrimaryPhone")
    bill_addr: QBAddress | None = Field(None, alias="BillAddr")
    ship_addr: QBAddress | None = Field(None, alias="ShipAddr")
    balance: float | None = Field(None, alias="Balance")
    active: bool = Field(True, alias="Active")
    notes: str | None = Field(None, alias="Notes")

    @field_validator("balance", mode="before")
    @classmethod
    def coerce_amount(cls, v: Any) -> float | None:
        return parse_amount(v)

    @property
    def name(self) -> str:
        """Display name, falling back to company or person name."""
        if self.display_name:
            return self.display_name
        if self.company_name:
            return self.company_name
        parts = [p for p in [self.given_name, self.family_name] if p]
        return " ".join(parts) if parts else f"Customer #{self.id}"

    @property
    def email(self) -> str | None:
        return (self.primary_email or {}).get("Address")

    @property
    def phone(self) -> str | None:
        return (self.primary_phone or {}).get("FreeFormNumber")


class QBItem(QBEntity):
    """QBO catalog item."""

    name: str = Field(alias="Name")
    sku: str | None = Field(None, alias="Sku")
    description: str | None = Field(None, alias="Description")
    type: str | None = Field(None, alias="Type")
    active: bool = Field(True, alias="Active")
    unit_price: float | None = Field(None, alias="UnitPrice")
    purchase_cost: float | None = Field(None, alias="PurchaseCost")
    qty_on_hand: float | None = Field(None, alias="QtyOnHand")

    @field_validator("unit_price", "purchase_cost", "qty_on_hand", mode="before")
    @classmethod
    def coerce_amount(cls, v: Any) -> float | None:
        return parse_amount(v)


class QBSalesItemLineDetail(QBOModel):
    item_ref: QBRef | None = Field(None, alias="ItemRef")
    qty: float | None = Field(None, alias="Qty")
    unit_price: float | None = Field(None, alias="UnitPrice")
    tax_code_ref: QBRef | None = Field(None, alias="TaxCodeRef")
    class_ref: QBRef | None = Field(None, alias="ClassRef")
    service_date: date | None = Field(None, alias="ServiceDate")

    @field_validator("qty", "unit_price", mode="before")
    @classmethod
    def coerce_amount(cls, v: Any) -> float | None:
        return parse_amount(v)

    @field_validator("service_date", mode="before")
    @classmethod
    def coerce_date(cls, v: Any) -> date | None:
        return parse_date(v)


class QBInvoiceLine(QBOModel):
    """Invoice line. Only SalesItemLineDetail lines carry an item."""

    id: str | None = Field(None, alias="Id")
    line_num: int | None = Field(None, alias="LineNum")
    amount: float | None = Field(None, alias="Amount")
    detail_type: str = Field("DescriptionOnly", alias="DetailType")
    description: str | None = Field(None, alias="Description")
    sales_item_line_detail: QBSalesItemLineDetail | None = Field(
        None, alias="SalesItemLineDetail"
    )

    @field_validator("id", mode="before")
    @classmethod
    def stringify_id(cls, v: Any) -> str | None:
        return None if v is None else str(v)

    @field_validator("amount", mode="before")
    @classmethod
    def coerce_amount(cls, v: Any) -> float | None:
        return parse_amount(v)

    @property
    def is_item_line(self) -> bool:
        return self.detail_type == "SalesItemLineDetail"

    @property
    def is_discount_line(self) -> bool:
        return self.detail_type == "DiscountLineDetail"


class QBTxnTaxDetail(QBOModel):
    total_tax: float | None = Field(None, alias="TotalTax")

    @field_validator("total_tax", mode="before")
    @classmethod
    def coerce_amount(cls, v: Any) -> float | None:
        return parse_amount(v)


class QBLinkedTxn(QBOModel):
    txn_id: str = Field(alias="TxnId")
    txn_type: str = Field(alias="TxnType")

    @field_validator("txn_id", mode="before")
    @classmethod
    def stringify(cls, v: Any) -> str:
        return str(v)


class QBCustomField(QBOModel):
    definition_id: str | None = Field(None, alias="DefinitionId")
    name: str | None = Field(None, alias="Name")
    string_value: str | None = Field(None, alias="StringValue")


class QBInvoice(QBEntity):
    """QBO invoice."""

    doc_number: str | None = Field(None, alias="DocNumber")
    txn_date: date | None = Field(None, alias="TxnDate")
    due_date: date | None = Field(None, alias="DueDate")
    customer_ref: QBRef | None = Field(None, alias="CustomerRef")
    lines: list[QBInvoiceLine] = Field(default_factory=list, alias="Line")
    txn_tax_detail: QBTxnTaxDetail | None = Field(None, alias="TxnTaxDetail")
    customer_memo: dict[str, Any] | None = Field(None, alias="CustomerMemo")
    private_note: str | None = Field(None, alias="PrivateNote")
    bill_email: dict[str, Any] | None = Field(None, alias="BillEmail")
    bill_addr: QBAddress | None = Field(None, alias="BillAddr")
    ship_addr: QBAddress | None = Field(None, alias="ShipAddr")
    total_amt: float | None = Field(None, alias="TotalAmt")
    balance: float | None = Field(None, alias="Balance")
    deposit: float | None = Field(None, alias="Deposit")
    exchange_rate: float | None = Field(None, alias="ExchangeRate")
    linked_txn: list[QBLinkedTxn] = Field(default_factory=list, alias="LinkedTxn")
    custom_fields: list[QBCustomField] = Field(default_factory=list, alias="CustomField")
    sales_term_ref: QBRef | None = Field(None, alias="SalesTermRef")
    apply_tax_after_discount: bool | None = Field(None, alias="ApplyTaxAfterDiscount")

    @field_validator("total_amt", "balance", "deposit", "exchange_rate", mode="before")
    @classmethod
    def coerce_amount(cls, v: Any) -> float | None:
        return parse_amount(v)

    @field_validator("txn_date", "due_date", mode="before")
    @classmethod
    def coerce_date(cls, v: Any) -> date | None:
        return parse_date(v)

    @property
    def item_lines(self) -> list[QBInvoiceLine]:
        return [line for line in self.lines if line.is_item_line]


class QBPaymentLine(QBOModel):
    amount: float | None = Field(None, alias="Amount")
    linked_txn: list[QBLinkedTxn] = Field(default_factory=list, alias="LinkedTxn")

    @field_validator("amount", mode="before")
    @classmethod
    def coerce_amount(cls, v: Any) -> float | None:
        return parse_amount(v)


class QBPayment(QBEntity):
    """QBO received payment."""

    txn_date: date | None = Field(None, alias="TxnDate")
    customer_ref: QBRef | None = Field(None, alias="CustomerRef")
    total_amt: float | None = Field(None, alias="TotalAmt")
    unapplied_amt: float | None = Field(None, alias="UnappliedAmt")
    payment_method_ref: QBRef | None = Field(None, alias="PaymentMethodRef")
    payment_ref_num: str | None = Field(None, alias="PaymentRefNum")
    private_note: str | None = Field(None, alias="PrivateNote")
    deposit_to_account_ref: QBRef | None = Field(None, alias="DepositToAccountRef")
    lines: list[QBPaymentLine] = Field(default_factory=list, alias="Line")

    @field_validator("total_amt", "unapplied_amt", mode="before")
    @classmethod
    def coerce_amount(cls, v: Any) -> float | None:
        return parse_amount(v)

    @field_validator("txn_date", mode="before")
    @classmethod
    def coerce_date(cls, v: Any) -> date | None:
        return parse_date(v)

    @property
    def linked_invoice_ids(self) -> list[str]:
        """QBO ids of invoices this payment is applied to, in line order."""
        ids = []
        for line in self.lines:
            for txn in line.linked_txn:
                if txn.txn_type == "Invoice" and txn.txn_id not in ids:
                    ids.append(txn.txn_id)
        return ids


# Webhook payloads


class EntityChange(QBOModel):
    """One changed entity inside a webhook notification."""

    name: str
    id: str
    operation: str
    last_updated: str = Field("", alias="lastUpdated")

    @field_validator("id", mode="before")
    @classmethod
    def stringify(cls, v: Any) -> str:
        return str(v)


class DataChangeEvent(QBOModel):
    entities: list[EntityChange] = Field(default_factory=list)


class EventNotification(QBOModel):
    realm_id: str = Field(alias="realmId")
    data_change_event: DataChangeEvent = Field(
        default_factory=DataChangeEvent, alias="dataChangeEvent"
    )

    @field_validator("realm_id", mode="before")
    @classmethod
    def stringify(cls, v: Any) -> str:
        return str(v)


class WebhookPayload(QBOModel):
    """Body POSTed by QBO to the webhook endpoint."""

    event_notifications: list[EventNotification] = Field(
        default_factory=list, alias="eventNotifications"
    )
