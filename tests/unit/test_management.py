"""
Unit tests for invoice management.

Tests cover:
- Issue, correct and re-export with artifact storage
- Export failures reported without undoing the ledger change
- Previews (HTML, image, unsupported)
- Legacy import with original PDF and PDF download
"""

import os
import tempfile
from datetime import date

import pytest

from invoice_store.blob import LocalBlobStore
from invoice_store.errors import ImmutableError, NotFoundError
from invoice_store.management import (
    InvoiceExporter,
    InvoiceManagement,
    invoice_object_key,
    legacy_object_key,
)
from invoice_store.models import LegacyInvoiceData
from invoice_store.store import ClientDirectory, Database, InvoiceLedger
from tests.factories import BANK, SELLER, make_address, make_client


class FakeExporter:
    """Exporter that renders a short text description of the invoice."""

    def __init__(self, mime_type="application/pdf", fail=False):
        self.mime_type = mime_type
        self.fail = fail
        self.exported = []

    async def export(self, invoice):
        if self.fail:
            raise RuntimeError("renderer crashed")
        self.exported.append(invoice)
        return f"invoice {invoice.number} total {invoice.total_amount.cents}".encode()


class TestInvoiceManagement:
    """Tests for InvoiceManagement."""

    @pytest.fixture
    def data_dir(self):
        """Create temporary data directory."""
        with tempfile.TemporaryDirectory() as tmpdir:
            yield tmpdir

    @pytest.fixture
    async def management(self, data_dir):
        db = Database(os.path.join(data_dir, "app.db"))
        await db.initialize()
        blobs = LocalBlobStore()
        blobs.define_bucket("invoices", os.path.join(data_dir, "blobs", "invoices"))

        directory = ClientDirectory(db)
        await directory.add(make_client("acme", "Acme Clinic"))

        return InvoiceManagement(
            ledger=InvoiceLedger(db),
            directory=directory,
            blob_store=blobs,
            seller_address=SELLER,
            bank_transfer_info=BANK,
            invoices_bucket="invoices",
            line_item_description="Dental services",
            invoice_number_padding=10,
        )

    async def read_pdf(self, management, number):
        stream, filename = await management.get_invoice_pdf(number)
        with stream:
            return stream.read(), filename

    def test_fake_exporter_matches_protocol(self):
        assert isinstance(FakeExporter(), InvoiceExporter)

    def test_invoice_object_key(self):
        key, filename = invoice_object_key("42", date(2026, 2, 20), 10)
        assert key == "2026-02/invoice-0000000042-date-2026-02-20"
        assert filename == "invoice-0000000042-date-2026-02-20.pdf"

    def test_invoice_object_key_long_number(self):
        key, _ = invoice_object_key("12345678901", date(2026, 2, 20), 10)
        assert key == "2026-02/invoice-12345678901-date-2026-02-20"

    @pytest.mark.asyncio
    async def test_issue_invoice(self, management):
        """Issuing creates the invoice and stores the rendered artifact."""
        result = await management.issue_invoice(
            "acme", 150000, FakeExporter(), date=date(2026, 2, 20)
        )

        invoice = result.invoice
        assert invoice.number == "1"
        assert invoice.content.buyer_address.name == "Acme Clinic"
        assert invoice.content.seller_address == SELLER
        assert [item.description for item in invoice.content.line_items] == ["Dental services"]
        assert invoice.total_amount.cents == 150000

        assert result.export_result.success is True
        assert result.export_result.locator.endswith(
            "2026-02/invoice-0000000001-date-2026-02-20.pdf"
        )

        content, filename = await self.read_pdf(management, "1")
        assert content == b"invoice 1 total 150000"
        assert filename == "invoice-0000000001-date-2026-02-20.pdf"

    @pytest.mark.asyncio
    async def test_issue_invoice_unknown_client(self, management):
        with pytest.raises(NotFoundError):
            await management.issue_invoice("ghost", 100, FakeExporter())

    @pytest.mark.asyncio
    async def test_issue_defaults_to_today(self, management):
        result = await management.issue_invoice("acme", 100, FakeExporter())
        assert result.invoice.content.date is not None
        assert (await management.get_invoice("1")).content.date == result.invoice.content.date

    @pytest.mark.asyncio
    async def test_export_failure_keeps_invoice(self, management):
        """A failing exporter is reported; the invoice still exists."""
        result = await management.issue_invoice(
            "acme", 100, FakeExporter(fail=True), date=date(2026, 2, 20)
        )

        assert result.export_result.success is False
        assert result.export_result.locator is None
        assert (await management.get_invoice("1")).number == "1"
        with pytest.raises(NotFoundError):
            await management.get_invoice_pdf("1")

    @pytest.mark.asyncio
    async def test_unsupported_mime_type_reported(self, management):
        result = await management.issue_invoice(
            "acme", 100, FakeExporter(mime_type="application/x-unknown"), date=date(2026, 2, 20)
        )
        assert result.export_result.success is False

    @pytest.mark.asyncio
    async def test_correct_invoice(self, management):
        """Correcting changes the amount, keeps the buyer and re-renders."""
        exporter = FakeExporter()
        await management.issue_invoice("acme", 100, exporter, date=date(2026, 2, 20))

        result = await management.correct_invoice("1", exporter, amount_cents=250)

        assert result.invoice.is_corrected is True
        assert result.invoice.total_amount.cents == 250
        assert result.invoice.content.date == date(2026, 2, 20)
        assert result.invoice.content.buyer_address.name == "Acme Clinic"

        stored = await management.get_invoice("1")
        assert stored.is_corrected is True
        assert stored.total_amount.cents == 250

        content, _ = await self.read_pdf(management, "1")
        assert content == b"invoice 1 total 250"

    @pytest.mark.asyncio
    async def test_reexport_invoice(self, management):
        await management.issue_invoice(
            "acme", 100, FakeExporter(fail=True), date=date(2026, 2, 20)
        )

        result = await management.reexport_invoice("1", FakeExporter())
        assert result.export_result.success is True
        content, _ = await self.read_pdf(management, "1")
        assert content == b"invoice 1 total 100"

    @pytest.mark.asyncio
    async def test_preview_html(self, management):
        """Previews use the next number and store nothing."""
        result = await management.preview_invoice(
            "acme", 100, FakeExporter(mime_type="text/html"), date=date(2026, 2, 20)
        )

        assert result.success is True
        assert result.locator == "invoice 1 total 100"
        page = await management.list_invoices(10)
        assert page.items == []

    @pytest.mark.asyncio
    async def test_preview_image_with_number(self, management):
        result = await management.preview_invoice(
            "acme", 100, FakeExporter(mime_type="image/png"), number=" 77 "
        )
        assert result.success is True
        assert result.locator.startswith("data:image/png;base64,")

    @pytest.mark.asyncio
    async def test_preview_unsupported_type(self, management):
        result = await management.preview_invoice("acme", 100, FakeExporter())
        assert result.success is False
        assert result.locator is None

    def test_legacy_object_key(self):
        assert legacy_object_key("35") == "legacy/imported-35"

    @pytest.mark.asyncio
    async def test_legacy_pdf_stored_with_pdf_extension(self, management, data_dir):
        """Legacy PDFs land at legacy/imported-<number>.pdf in the invoices bucket."""
        source = os.path.join(data_dir, "scan.pdf")
        with open(source, "wb") as f:
            f.write(b"%PDF original")

        data = LegacyInvoiceData(
            number="35",
            date=date(2019, 4, 1),
            recipient=make_address("Old Clinic"),
            total_cents=9900,
        )
        await management.import_legacy_invoice(data, source)

        stored = os.path.join(data_dir, "blobs", "invoices", "legacy", "imported-35.pdf")
        with open(stored, "rb") as f:
            assert f.read() == b"%PDF original"

    @pytest.mark.asyncio
    async def test_import_legacy_with_pdf(self, management, data_dir):
        """The original PDF is stored and preferred for download."""
        source = os.path.join(data_dir, "scan.pdf")
        with open(source, "wb") as f:
            f.write(b"%PDF original")

        data = LegacyInvoiceData(
            number="35",
            date=date(2019, 4, 1),
            recipient=make_address("Old Clinic"),
            total_cents=9900,
        )
        invoice = await management.import_legacy_invoice(data, source)

        assert invoice.is_legacy is True
        assert invoice.total_amount.cents == 9900

        content, filename = await self.read_pdf(management, "35")
        assert content == b"%PDF original"
        assert filename == "invoice-35.pdf"

        with pytest.raises(ImmutableError):
            await management.correct_invoice("35", FakeExporter(), amount_cents=1)

    @pytest.mark.asyncio
    async def test_import_legacy_missing_pdf(self, management, data_dir):
        """A missing source PDF is skipped; the import stands."""
        data = LegacyInvoiceData(
            number="36",
            date=date(2019, 4, 2),
            recipient=make_address("Old Clinic"),
            total_cents=100,
        )
        await management.import_legacy_invoice(data, os.path.join(data_dir, "missing.pdf"))

        assert (await management.get_invoice("36")).is_legacy is True
        with pytest.raises(NotFoundError):
            await management.get_invoice_pdf("36")

    @pytest.mark.asyncio
    async def test_list_invoices(self, management):
        exporter = FakeExporter()
        for day in (1, 2, 3):
            await management.issue_invoice("acme", 100, exporter, date=date(2026, 3, day))

        page = await management.list_invoices(2)
        assert [i.number for i in page.items] == ["3", "2"]
        rest = await management.list_invoices(2, page.next_cursor)
        assert [i.number for i in rest.items] == ["1"]
        assert rest.next_cursor is None
