"""
Invoice store - application wiring and initialization entry point.

This module builds every component from configuration:
- Database (shared SQLite file)
- InvoiceLedger and ClientDirectory
- LocalBlobStore with the invoices bucket defined
- InvoiceManagement on top of them

Usage:
    invoice-store-init
    python -m invoice_store.main

Both create the database schema and the bucket directories, then exit.
Front ends (CLI, web server, desktop app) build an Application the same
way and keep it for the life of the process.

Configuration is entirely via environment variables.
See config.py for all available settings.

Invariants:
    - Initialization is idempotent and safe to run from several processes at once
    - Components are only usable after initialize() completed

How to change safely:
    - Add new components here, not in front ends
    - Keep initialize() free of data migrations that are not additive
"""

from __future__ import annotations

import asyncio
import logging
import sys

import json_log_formatter

from .blob import LocalBlobStore
from .config import AppConfig
from .management import InvoiceManagement
from .store import ClientDirectory, Database, InvoiceLedger

logger = logging.getLogger(__name__)


def setup_logging(config: AppConfig) -> None:
    """Configure logging based on configuration.

    Args:
        config: Application configuration
    """
    level = getattr(logging, config.observability.log_level.upper(), logging.INFO)

    if config.observability.log_format == "json":
        formatter: logging.Formatter = json_log_formatter.JSONFormatter()
    else:
        formatter = logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")

    handler = logging.StreamHandler()
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    root_logger.handlers = [handler]


class Application:
    """All invoice store components of one process.

    Attributes:
        config: Application configuration
        db: Shared SQLite database
        ledger: Invoice ledger
        directory: Client directory
        blob_store: Artifact storage
        management: User-level invoice operations

    Example:
        >>> app = Application(AppConfig.from_env())
        >>> await app.initialize()
        >>> await app.directory.add(client)
    """

    def __init__(self, config: AppConfig | None = None) -> None:
        """Build the components.

        Args:
            config: Optional configuration (loaded from env if not provided)
        """
        self.config = config or AppConfig.from_env()

        storage = self.config.storage
        self.db = Database(
            storage.db_path,
            wal_mode=storage.wal_mode,
            busy_timeout_ms=storage.busy_timeout_ms,
            cache_size_pages=storage.cache_size_pages,
            synchronous=storage.synchronous,
        )
        self.ledger = InvoiceLedger(
            self.db, start_invoice_number=self.config.invoicing.start_invoice_number
        )
        self.directory = ClientDirectory(self.db)
        self.blob_store = LocalBlobStore(dict(self.config.blob.content_types))
        self.management = InvoiceManagement(
            ledger=self.ledger,
            directory=self.directory,
            blob_store=self.blob_store,
            seller_address=self.config.seller.billing_address(),
            bank_transfer_info=self.config.seller.bank_transfer_info(),
            invoices_bucket=self.config.blob.invoices_bucket,
            line_item_description=self.config.invoicing.line_item_description,
            invoice_number_padding=self.config.invoicing.invoice_number_padding,
        )

    async def initialize(self) -> None:
        """Create the database schema and define the invoices bucket."""
        bucket = self.config.blob.invoices_bucket
        self.blob_store.define_bucket(bucket, self.config.blob.bucket_dir(bucket))
        await self.db.initialize()
        logger.info(
            "Invoice store initialized",
            extra={"db_path": self.config.storage.db_path, "invoices_bucket": bucket},
        )


def main() -> None:
    """Main entry point."""
    try:
        config = AppConfig.from_env()
    except ValueError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        sys.exit(1)

    setup_logging(config)
    config.log_config()

    app = Application(config)
    try:
        asyncio.run(app.initialize())
    except Exception as e:
        logger.error(f"Initialization failed: {e}", exc_info=True)
        sys.exit(1)


if __name__ == "__main__":
    main()
