"""
Configuration management for the invoice store.

All configuration is done via environment variables - no config files.
This module provides typed configuration classes with validation.

Invariants:
    - All settings have sensible defaults for local development
    - Every process sharing one database must use the same DB_PATH and
      BLOB_STORAGE_PATH
    - Bank and identity details are never logged

How to change safely:
    - Add new settings with defaults that maintain backward compatibility
    - START_INVOICE_NUMBER only seeds an empty database; changing it later
      has no effect on numbering
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field

from .models import BankTransferInfo, BillingAddress

logger = logging.getLogger(__name__)

DEFAULT_CONTENT_TYPES = "application/pdf=.pdf,text/html=.html,image/png=.png,image/jpeg=.jpg"

LOG_FORMATS = ("json", "text")


def parse_content_types(value: str) -> tuple[tuple[str, str], ...]:
    """Parse "type=.ext,type=.ext" into ordered (content_type, extension) pairs.

    Raises:
        ValueError: If an entry is not of the form "type=extension"
    """
    pairs = []
    for entry in value.split(","):
        entry = entry.strip()
        if not entry:
            continue
        content_type, sep, extension = entry.partition("=")
        if not sep or not content_type.strip() or not extension.strip():
            raise ValueError(f"Invalid BLOB_CONTENT_TYPES entry '{entry}'. Expected 'type=.ext'")
        pairs.append((content_type.strip(), extension.strip()))
    return tuple(pairs)


@dataclass(frozen=True)
class StorageConfig:
    """SQLite database configuration.

    Attributes:
        db_path: Path of the shared SQLite database file
        wal_mode: Enable SQLite WAL mode for concurrent reads
        busy_timeout_ms: How long SQLite waits on a lock per attempt
        cache_size_pages: SQLite cache size (negative = KB)
        synchronous: SQLite synchronous mode (FULL makes commits durable)
    """

    db_path: str = "/data/app.db"
    wal_mode: bool = True
    busy_timeout_ms: int = 5000
    cache_size_pages: int = -64000
    synchronous: str = "FULL"

    @classmethod
    def from_env(cls) -> StorageConfig:
        """Load configuration from environment variables."""
        return cls(
            db_path=os.getenv("DB_PATH", "/data/app.db"),
            wal_mode=os.getenv("SQLITE_WAL_MODE", "true").lower() == "true",
            busy_timeout_ms=int(os.getenv("SQLITE_BUSY_TIMEOUT_MS", "5000")),
            cache_size_pages=int(os.getenv("SQLITE_CACHE_SIZE", "-64000")),
            synchronous=os.getenv("SQLITE_SYNCHRONOUS", "FULL").upper(),
        )


@dataclass(frozen=True)
class BlobConfig:
    """Blob store configuration.

    Attributes:
        storage_path: Root directory; each bucket is a sub-directory
        invoices_bucket: Bucket holding invoice artifacts
        content_types: Ordered (content type, extension) pairs
    """

    storage_path: str = "/data/blobs"
    invoices_bucket: str = "invoices"
    content_types: tuple[tuple[str, str], ...] = parse_content_types(DEFAULT_CONTENT_TYPES)

    @classmethod
    def from_env(cls) -> BlobConfig:
        """Load configuration from environment variables."""
        return cls(
            storage_path=os.getenv("BLOB_STORAGE_PATH", "/data/blobs"),
            invoices_bucket=os.getenv("INVOICES_BUCKET", "invoices"),
            content_types=parse_content_types(
                os.getenv("BLOB_CONTENT_TYPES", DEFAULT_CONTENT_TYPES)
            ),
        )

    def bucket_dir(self, bucket: str) -> str:
        return os.path.join(self.storage_path, bucket)


@dataclass(frozen=True)
class InvoicingConfig:
    """Invoice numbering and content configuration.

    Attributes:
        start_invoice_number: First number on an empty database
        invoice_number_padding: Zero-padding width in artifact names
        line_item_description: Description of the single line item
    """

    start_invoice_number: int = 1
    invoice_number_padding: int = 10
    line_item_description: str = "Services"

    @classmethod
    def from_env(cls) -> InvoicingConfig:
        """Load configuration from environment variables."""
        return cls(
            start_invoice_number=int(os.getenv("START_INVOICE_NUMBER", "1")),
            invoice_number_padding=int(os.getenv("INVOICE_NUMBER_PADDING", "10")),
            line_item_description=os.getenv("LINE_ITEM_DESCRIPTION", "Services"),
        )


@dataclass(frozen=True)
class SellerConfig:
    """Seller identity and bank details printed on new invoices."""

    name: str = ""
    representative_name: str = ""
    company_identifier: str = ""
    vat_identifier: str | None = None
    address: str = ""
    city: str = ""
    postal_code: str = ""
    country: str = ""
    bank_iban: str = ""
    bank_name: str = ""
    bank_bic: str = ""

    @classmethod
    def from_env(cls) -> SellerConfig:
        """Load configuration from environment variables."""
        return cls(
            name=os.getenv("SELLER_NAME", ""),
            representative_name=os.getenv("SELLER_REPRESENTATIVE_NAME", ""),
            company_identifier=os.getenv("SELLER_COMPANY_IDENTIFIER", ""),
            vat_identifier=os.getenv("SELLER_VAT_IDENTIFIER") or None,
            address=os.getenv("SELLER_ADDRESS", ""),
            city=os.getenv("SELLER_CITY", ""),
            postal_code=os.getenv("SELLER_POSTAL_CODE", ""),
            country=os.getenv("SELLER_COUNTRY", ""),
            bank_iban=os.getenv("BANK_IBAN", ""),
            bank_name=os.getenv("BANK_NAME", ""),
            bank_bic=os.getenv("BANK_BIC", ""),
        )

    def billing_address(self) -> BillingAddress:
        return BillingAddress(
            name=self.name,
            representative_name=self.representative_name,
            company_identifier=self.company_identifier,
            vat_identifier=self.vat_identifier,
            address=self.address,
            city=self.city,
            postal_code=self.postal_code,
            country=self.country,
        )

    def bank_transfer_info(self) -> BankTransferInfo:
        return BankTransferInfo(iban=self.bank_iban, bank_name=self.bank_name, bic=self.bank_bic)


@dataclass(frozen=True)
class ObservabilityConfig:
    """Logging configuration.

    Attributes:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
        log_format: Log format (json, text)
    """

    log_level: str = "INFO"
    log_format: str = "json"

    @classmethod
    def from_env(cls) -> ObservabilityConfig:
        """Load configuration from environment variables."""
        return cls(
            log_level=os.getenv("LOG_LEVEL", "INFO"),
            log_format=os.getenv("LOG_FORMAT", "json").lower(),
        )


@dataclass
class AppConfig:
    """Complete application configuration.

    This aggregates all configuration sections and provides validation.

    Attributes:
        storage: SQLite configuration
        blob: Blob store configuration
        invoicing: Numbering and line item configuration
        seller: Seller identity and bank details
        observability: Logging configuration
    """

    storage: StorageConfig = field(default_factory=StorageConfig)
    blob: BlobConfig = field(default_factory=BlobConfig)
    invoicing: InvoicingConfig = field(default_factory=InvoicingConfig)
    seller: SellerConfig = field(default_factory=SellerConfig)
    observability: ObservabilityConfig = field(default_factory=ObservabilityConfig)

    @classmethod
    def from_env(cls) -> AppConfig:
        """Load complete configuration from environment variables.

        Returns:
            AppConfig with all sections populated from environment.

        Raises:
            ValueError: If configuration is missing or invalid.
        """
        config = cls(
            storage=StorageConfig.from_env(),
            blob=BlobConfig.from_env(),
            invoicing=InvoicingConfig.from_env(),
            seller=SellerConfig.from_env(),
            observability=ObservabilityConfig.from_env(),
        )

        config.validate()
        return config

    def validate(self) -> None:
        """Validate configuration consistency.

        Raises:
            ValueError: If configuration is invalid.
        """
        if not self.storage.db_path:
            raise ValueError("DB_PATH cannot be empty")
        if self.storage.synchronous not in ("OFF", "NORMAL", "FULL", "EXTRA"):
            raise ValueError(
                f"Invalid SQLITE_SYNCHRONOUS '{self.storage.synchronous}'. "
                "Must be one of: OFF, NORMAL, FULL, EXTRA"
            )

        if not self.blob.storage_path:
            raise ValueError("BLOB_STORAGE_PATH cannot be empty")
        if not self.blob.invoices_bucket:
            raise ValueError("INVOICES_BUCKET cannot be empty")
        if not self.blob.content_types:
            raise ValueError("BLOB_CONTENT_TYPES must map at least one content type")
        for content_type, extension in self.blob.content_types:
            if not extension.startswith(".") or len(extension) < 2:
                raise ValueError(
                    f"Extension '{extension}' for '{content_type}' must start with '.'"
                )

        if self.invoicing.start_invoice_number < 1:
            raise ValueError("START_INVOICE_NUMBER must be >= 1")
        if self.invoicing.invoice_number_padding < 0:
            raise ValueError("INVOICE_NUMBER_PADDING cannot be negative")

        if self.observability.log_format not in LOG_FORMATS:
            raise ValueError(
                f"Invalid LOG_FORMAT '{self.observability.log_format}'. Must be one of: json, text"
            )

    def log_config(self) -> None:
        """Log configuration (seller and bank details omitted).

        Runs after logging is set up, so configuration warnings go through
        the configured formatter.
        """
        logger.info(
            "Configuration loaded",
            extra={
                "db_path": self.storage.db_path,
                "wal_mode": self.storage.wal_mode,
                "synchronous": self.storage.synchronous,
                "blob_storage_path": self.blob.storage_path,
                "invoices_bucket": self.blob.invoices_bucket,
                "content_types": [ct for ct, _ in self.blob.content_types],
                "start_invoice_number": self.invoicing.start_invoice_number,
                "invoice_number_padding": self.invoicing.invoice_number_padding,
                "log_level": self.observability.log_level,
            },
        )

        if not self.seller.name:
            logger.warning("SELLER_NAME is not set; new invoices will have an empty seller name")
