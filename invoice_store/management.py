"""
Invoice management - the operations a user performs on invoices.

This module composes the ledger, the client directory and the blob store:
- Issue an invoice for a client and store its rendered artifact
- Correct an issued invoice and re-render it
- Re-export an invoice after a template change or a lost artifact
- Preview an invoice before it is issued
- Import a manually created (legacy) invoice with its original PDF
- Serve the PDF of an invoice for download

Rendering is delegated to an InvoiceExporter supplied by the caller.

Invariants:
    - The ledger mutation is the source of truth; an export failure never
      rolls it back, it is logged and reported in ExportResult
    - Exported artifacts are keyed by number and date, so re-exporting
      overwrites the previous artifact of the same invoice
    - A stored legacy PDF takes precedence over any exported artifact
    - Legacy PDFs live at "legacy/imported-<number>" plus the ".pdf" extension
      the blob store appends; stores that kept the key as
      "legacy/imported-<number>.pdf" must rename those files to stay reachable

How to change safely:
    - Changing the object key format orphans existing artifacts
    - Keep ledger and directory errors propagating to the caller
"""

from __future__ import annotations

import base64
import logging
import os
from dataclasses import dataclass
from datetime import date as date_type
from datetime import datetime, timezone
from typing import BinaryIO, Protocol, runtime_checkable

from .blob import LocalBlobStore
from .models import (
    Amount,
    BankTransferInfo,
    BillingAddress,
    Currency,
    Invoice,
    InvoiceContent,
    LegacyInvoiceData,
    LineItem,
    Page,
)
from .store import ClientDirectory, InvoiceLedger

logger = logging.getLogger(__name__)

LEGACY_PDF_CONTENT_TYPE = "application/pdf"

_PREVIEW_IMAGE_TYPES = ("image/png", "image/jpeg")


@runtime_checkable
class InvoiceExporter(Protocol):
    """Renders an invoice into a document of one MIME type."""

    mime_type: str

    async def export(self, invoice: Invoice) -> bytes: ...


@dataclass(frozen=True)
class ExportResult:
    """Outcome of rendering an invoice.

    Attributes:
        success: Whether rendering (and storing, if any) succeeded
        locator: Stored artifact locator, or preview data (HTML text or a
            data: URI); None on failure
    """

    success: bool
    locator: str | None


@dataclass(frozen=True)
class InvoiceOperationResult:
    invoice: Invoice
    export_result: ExportResult


def format_invoice_number(number: str, padding: int) -> str:
    """Left-pad an invoice number with zeros; longer numbers are kept as is."""
    return number.zfill(padding) if padding > 0 else number


def invoice_object_key(number: str, invoice_date: date_type, padding: int) -> tuple[str, str]:
    """Build the blob key and download filename of an exported invoice.

    Returns:
        ("<yyyy-MM>/invoice-<padded>-date-<yyyy-MM-dd>", "invoice-<padded>-date-<yyyy-MM-dd>.pdf")
    """
    padded = format_invoice_number(number, padding)
    day = invoice_date.isoformat()
    object_key = f"{invoice_date:%Y-%m}/invoice-{padded}-date-{day}"
    filename = f"invoice-{padded}-date-{day}.pdf"
    return object_key, filename


def legacy_object_key(number: str) -> str:
    return f"legacy/imported-{number}"


class InvoiceManagement:
    """User-level invoice operations.

    Example:
        >>> management = InvoiceManagement(ledger, directory, blobs, seller, bank, "invoices")
        >>> result = await management.issue_invoice("acme", 150000, pdf_exporter)
        >>> result.invoice.number, result.export_result.success
        ('1', True)
    """

    def __init__(
        self,
        ledger: InvoiceLedger,
        directory: ClientDirectory,
        blob_store: LocalBlobStore,
        seller_address: BillingAddress,
        bank_transfer_info: BankTransferInfo,
        invoices_bucket: str,
        line_item_description: str = "Services",
        invoice_number_padding: int = 10,
    ) -> None:
        """Initialize invoice management.

        Args:
            ledger: Invoice ledger
            directory: Client directory
            blob_store: Blob store holding rendered and legacy artifacts
            seller_address: Seller printed on every new invoice
            bank_transfer_info: Payment details printed on every new invoice
            invoices_bucket: Bucket for invoice artifacts (must be defined)
            line_item_description: Description of the single line item
            invoice_number_padding: Zero-padding width in object keys and filenames
        """
        self.ledger = ledger
        self.directory = directory
        self.blob_store = blob_store
        self.seller_address = seller_address
        self.bank_transfer_info = bank_transfer_info
        self.invoices_bucket = invoices_bucket
        self.line_item_description = line_item_description
        self.invoice_number_padding = invoice_number_padding

    def _build_content(
        self,
        invoice_date: date_type,
        buyer_address: BillingAddress,
        amount_cents: int,
        currency: Currency = Currency.EUR,
    ) -> InvoiceContent:
        return InvoiceContent(
            date=invoice_date,
            seller_address=self.seller_address,
            buyer_address=buyer_address,
            line_items=(LineItem(self.line_item_description, Amount(amount_cents, currency)),),
            bank_transfer_info=self.bank_transfer_info,
        )

    async def _export_and_store(self, invoice: Invoice, exporter: InvoiceExporter) -> ExportResult:
        object_key, _ = invoice_object_key(
            invoice.number, invoice.content.date, self.invoice_number_padding
        )
        try:
            document = await exporter.export(invoice)
            locator = await self.blob_store.upload(
                self.invoices_bucket, object_key, document, exporter.mime_type
            )
        except Exception:
            logger.error(
                "Invoice export failed",
                extra={"number": invoice.number, "mime_type": exporter.mime_type},
                exc_info=True,
            )
            return ExportResult(False, None)
        return ExportResult(True, locator)

    async def issue_invoice(
        self,
        client_nickname: str,
        amount_cents: int,
        exporter: InvoiceExporter,
        date: date_type | None = None,
    ) -> InvoiceOperationResult:
        """Issue a new invoice to a client and store its rendered artifact.

        Args:
            client_nickname: Nickname of the billed client
            amount_cents: Invoice total in cents
            exporter: Renderer for the stored artifact
            date: Invoice date (today, UTC, when omitted)

        Raises:
            NotFoundError: If the client does not exist
            OrderingViolationError: If the date is before the newest invoice's date
        """
        client = await self.directory.get(client_nickname)
        invoice_date = date or datetime.now(timezone.utc).date()
        content = self._build_content(invoice_date, client.address, amount_cents)

        invoice = await self.ledger.create(content)
        export_result = await self._export_and_store(invoice, exporter)
        return InvoiceOperationResult(invoice, export_result)

    async def correct_invoice(
        self,
        number: str,
        exporter: InvoiceExporter,
        amount_cents: int | None = None,
        date: date_type | None = None,
    ) -> InvoiceOperationResult:
        """Change the amount and/or date of an issued invoice and re-render it.

        The buyer stays the one on the stored invoice.

        Raises:
            NotFoundError: If no invoice has this number
            ImmutableError: If the invoice is a legacy import
            OrderingViolationError: If the new date breaks ordering
        """
        existing = await self.ledger.get(number)
        new_date = date or existing.content.date
        new_amount = amount_cents if amount_cents is not None else existing.total_amount.cents
        content = self._build_content(new_date, existing.content.buyer_address, new_amount)

        await self.ledger.update(number, content)
        invoice = Invoice(number, content, is_corrected=True)
        export_result = await self._export_and_store(invoice, exporter)
        return InvoiceOperationResult(invoice, export_result)

    async def reexport_invoice(self, number: str, exporter: InvoiceExporter) -> InvoiceOperationResult:
        """Render and store an existing invoice again.

        Raises:
            NotFoundError: If no invoice has this number
        """
        invoice = await self.ledger.get(number)
        export_result = await self._export_and_store(invoice, exporter)
        return InvoiceOperationResult(invoice, export_result)

    async def preview_invoice(
        self,
        client_nickname: str,
        amount_cents: int,
        exporter: InvoiceExporter,
        date: date_type | None = None,
        number: str | None = None,
    ) -> ExportResult:
        """Render an invoice without issuing or storing it.

        Args:
            client_nickname: Nickname of the billed client
            amount_cents: Invoice total in cents
            exporter: An HTML or image exporter
            date: Invoice date (today, UTC, when omitted)
            number: Number to print; the next number when omitted

        Returns:
            ExportResult whose locator is the HTML text or a base64 data: URI

        Raises:
            NotFoundError: If the client does not exist
        """
        client = await self.directory.get(client_nickname)
        invoice_date = date or datetime.now(timezone.utc).date()
        if number and number.strip():
            number = number.strip()
        else:
            number = await self.ledger.peek_next_number()
        invoice = Invoice(number, self._build_content(invoice_date, client.address, amount_cents))

        try:
            document = await exporter.export(invoice)
        except Exception:
            logger.error("Invoice preview export failed", extra={"number": number}, exc_info=True)
            return ExportResult(False, None)

        if exporter.mime_type == "text/html":
            return ExportResult(True, document.decode("utf-8"))
        if exporter.mime_type in _PREVIEW_IMAGE_TYPES:
            encoded = base64.b64encode(document).decode("ascii")
            return ExportResult(True, f"data:{exporter.mime_type};base64,{encoded}")

        logger.error(
            "Invoice preview export failed: unsupported MIME type",
            extra={"number": number, "mime_type": exporter.mime_type},
        )
        return ExportResult(False, None)

    async def import_legacy_invoice(
        self,
        data: LegacyInvoiceData,
        source_pdf: str | os.PathLike[str] | None = None,
    ) -> Invoice:
        """Import a manually created invoice under its historical number.

        When source_pdf points to an existing file it is stored as the
        invoice's downloadable PDF. Failing to store it is logged; the
        import itself stands.

        Raises:
            InvalidArgumentError: If the number is not a decimal-digit string
            AlreadyExistsError: If the number is already used
        """
        content = self._build_content(data.date, data.recipient, data.total_cents, data.currency)
        invoice = await self.ledger.import_legacy(content, data.number)

        if source_pdf and os.path.isfile(source_pdf):
            try:
                with open(source_pdf, "rb") as f:
                    await self.blob_store.upload(
                        self.invoices_bucket,
                        legacy_object_key(data.number),
                        f,
                        LEGACY_PDF_CONTENT_TYPE,
                    )
            except Exception:
                logger.error(
                    "Failed to store legacy PDF",
                    extra={"number": data.number, "source_pdf": str(source_pdf)},
                    exc_info=True,
                )

        return invoice

    async def get_invoice(self, number: str) -> Invoice:
        return await self.ledger.get(number)

    async def list_invoices(self, limit: int, cursor: str | None = None) -> Page:
        return await self.ledger.latest(limit, cursor)

    async def get_invoice_pdf(self, number: str) -> tuple[BinaryIO, str]:
        """Open the PDF of an invoice for download.

        Returns:
            (open binary stream, suggested download filename); the caller
            closes the stream

        Raises:
            NotFoundError: If the invoice does not exist or has no stored PDF
        """
        invoice = await self.ledger.get(number)

        legacy_key = legacy_object_key(number)
        if await self.blob_store.exists(self.invoices_bucket, legacy_key):
            stream = await self.blob_store.open_read(self.invoices_bucket, legacy_key)
            return stream, f"invoice-{number}.pdf"

        object_key, filename = invoice_object_key(
            invoice.number, invoice.content.date, self.invoice_number_padding
        )
        stream = await self.blob_store.open_read(self.invoices_bucket, object_key)
        return stream, filename
