from datetime import datetime, timezone
from enum import Enum
from typing import List, Optional
from pydantic import BaseModel, Field

from app.models.base import Money
from app.utils.money import ZERO


class ViolationKind(str, Enum):
    ORPHANED_REFERENCE = "orphaned_reference"
    UNRESOLVABLE_OWNER = "unresolvable_owner"
    MISATTRIBUTED_CLIENT = "misattributed_client"
    STORE_FAILURE = "store_failure"


class IntegrityViolation(BaseModel):
    """A detected problem that a sweep reports instead of correcting."""
    kind: ViolationKind
    payment_id: Optional[str] = None
    document_id: Optional[str] = None
    client_id: Optional[str] = None
    amount: Optional[Money] = None
    detail: str = ""


class UnownedPaymentsReport(BaseModel):
    scanned: int = 0
    dry_run: bool = False
    repaired_payment_ids: List[str] = []
    violations: List[IntegrityViolation] = []


class SettlementFlagReport(BaseModel):
    scanned: int = 0
    corrected_payment_ids: List[str] = []
    violations: List[IntegrityViolation] = []


class MigrationResult(BaseModel):
    invoice_id: str
    success: bool
    skipped: bool = False
    created_count: int = 0
    migrated_count: int = 0
    embedded_total: Money = ZERO
    migrated_total: Money = ZERO
    error: Optional[str] = None


class MigrationSweepReport(BaseModel):
    success: bool = True
    documents_processed: int = 0
    migrated_count: int = 0
    skipped_proformas: int = 0
    results: List[MigrationResult] = []


class RollbackResult(BaseModel):
    invoice_id: str
    success: bool
    restored_count: int = 0
    deleted_count: int = 0
    skipped_payment_ids: List[str] = []
    error: Optional[str] = None


class DiagnosticReport(BaseModel):
    client_id: Optional[str] = None
    generated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    invoices_total: int = 0
    invoices: int = 0
    proformas: int = 0
    cancelled_invoices: int = 0
    deleted_documents: int = 0
    documents_with_legacy_payments: int = 0

    payments_total: int = 0
    payments_allocated: int = 0
    payments_unallocated: int = 0
    payments_settled: int = 0
    payments_unsettled: int = 0
    payments_migrated: int = 0
    payments_repaired: int = 0
    payments_amount: Money = ZERO

    clients_total: int = 0

    violations: List[IntegrityViolation] = []
    issues: List[str] = []
