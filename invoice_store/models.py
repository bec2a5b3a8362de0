"""
Domain records shared by the ledger, the client directory and invoice management.

All records are frozen dataclasses: the stores hand out values, never live rows,
so a caller can keep an Invoice or Client around without observing later writes.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date
from enum import Enum
from typing import Any, NamedTuple


class Currency(Enum):
    """Supported invoice currencies."""

    EUR = "EUR"


@dataclass(frozen=True)
class BillingAddress:
    """Billing details of a seller, a buyer or a client.

    Attributes:
        name: Company display name (also used to match invoices to clients)
        representative_name: Person signing on behalf of the company
        company_identifier: Company registration identifier
        vat_identifier: VAT identifier, if VAT registered
        address: Street address
        city: City
        postal_code: Postal code
        country: Country
    """

    name: str
    representative_name: str
    company_identifier: str
    vat_identifier: str | None
    address: str
    city: str
    postal_code: str
    country: str


@dataclass(frozen=True)
class BankTransferInfo:
    iban: str
    bank_name: str
    bic: str


@dataclass(frozen=True)
class Amount:
    """Money amount in minor units (cents)."""

    cents: int
    currency: Currency

    @classmethod
    def zero(cls, currency: Currency) -> Amount:
        return cls(0, currency)

    def __add__(self, other: Amount) -> Amount:
        if self.currency != other.currency:
            raise ValueError(
                f"Cannot add amounts with different currencies: "
                f"{self.currency.value} and {other.currency.value}"
            )
        return Amount(self.cents + other.cents, self.currency)


@dataclass(frozen=True)
class LineItem:
    description: str
    amount: Amount


@dataclass(frozen=True)
class InvoiceContent:
    """Everything on an invoice except its number and flags.

    Attributes:
        date: Issue date
        seller_address: Issuing company
        buyer_address: Billed company
        line_items: Ordered line items
        bank_transfer_info: Where to pay
    """

    date: date
    seller_address: BillingAddress
    buyer_address: BillingAddress
    line_items: tuple[LineItem, ...]
    bank_transfer_info: BankTransferInfo

    def __post_init__(self) -> None:
        # Accept any sequence but store an immutable tuple so equality is by value.
        object.__setattr__(self, "line_items", tuple(self.line_items))


@dataclass(frozen=True)
class Invoice:
    """A numbered invoice.

    Attributes:
        number: Decimal-digit string, unique and numerically ordered
        content: Invoice content
        is_corrected: True once the invoice has been updated after issue
        is_legacy: True for invoices imported under a historical number
    """

    number: str
    content: InvoiceContent
    is_corrected: bool = False
    is_legacy: bool = False

    @property
    def total_amount(self) -> Amount:
        total = Amount.zero(Currency.EUR)
        for item in self.content.line_items:
            total = total + item.amount
        return total


@dataclass(frozen=True)
class Client:
    nickname: str
    address: BillingAddress


@dataclass(frozen=True)
class ClientUpdate:
    """Partial client update; a None field keeps the stored value."""

    nickname: str | None = None
    address: BillingAddress | None = None


class Page(NamedTuple):
    """One page of a keyset-paginated listing.

    next_cursor is None when there are no further pages.
    """

    items: list[Any]
    next_cursor: str | None


@dataclass(frozen=True)
class LegacyInvoiceData:
    """Metadata recovered from a manually created (pre-system) invoice PDF."""

    number: str
    date: date
    recipient: BillingAddress
    total_cents: int
    currency: Currency = Currency.EUR
