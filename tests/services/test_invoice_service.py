from datetime import datetime, timezone
from decimal import Decimal

import pytest

from app.models.invoice import CancelDisposition, InvoiceStatus
from app.models.payment import AuditAction, PaymentSource
from app.utils.payment_validation import NotFoundError, ValidationError

D1 = datetime(2024, 1, 1, tzinfo=timezone.utc)


def _seed(ledger):
    ledger.client()
    ledger.invoice("inv-1", "300.00")
    ledger.invoice("inv-2", "100.00")
    ledger.payment("p1", "120.00", document_id="inv-1", payment_date=D1)
    ledger.payment("p2", "80.00", document_id="inv-1", payment_date=D1)
    ledger.payment("p3", "25.00", payment_date=D1)


@pytest.mark.asyncio
async def test_cancel_with_move_releases_payments_to_account(ledger):
    _seed(ledger)
    paid_before = (await ledger.queries.invoice_summary("inv-1")).total_paid
    balance_before = await ledger.queries.unallocated_balance("client-1")

    result = await ledger.invoice_service.cancel_invoice("inv-1", CancelDisposition.MOVE_TO_ACCOUNT)

    assert result.status == InvoiceStatus.CANCELLED
    assert sorted(result.released_payment_ids) == ["p1", "p2"]
    assert result.released_amount == Decimal("200.00")
    assert await ledger.queries.unallocated_balance("client-1") == balance_before + paid_before
    for pid in ("p1", "p2"):
        payment = ledger.stored(pid)
        assert payment.document_id is None
        assert payment.invoice_number == ""
        assert payment.settled_to_document is False
        assert payment.audit_trail[-1].action == AuditAction.RELEASED
        assert payment.audit_trail[-1].document_id == "inv-1"
    assert ledger.invoices.docs["inv-1"].status == InvoiceStatus.CANCELLED


@pytest.mark.asyncio
async def test_released_payments_can_fund_another_invoice(ledger):
    _seed(ledger)
    await ledger.invoice_service.cancel_invoice("inv-1", CancelDisposition.MOVE_TO_ACCOUNT)

    result = await ledger.allocation.allocate(
        "client-1", "inv-2", Decimal("100.00"), PaymentSource.CLIENT_ACCOUNT
    )

    assert result.applied == Decimal("100.00")
    assert await ledger.queries.outstanding("inv-2") == Decimal("0.00")
    assert await ledger.queries.unallocated_balance("client-1") == Decimal("125.00")


@pytest.mark.asyncio
async def test_cancel_with_keep_as_history_leaves_payments(ledger):
    _seed(ledger)
    balance_before = await ledger.queries.unallocated_balance("client-1")
    before = {pid: p.model_dump() for pid, p in ledger.payments.docs.items()}

    result = await ledger.invoice_service.cancel_invoice("inv-1", CancelDisposition.KEEP_AS_HISTORY)

    assert result.disposition == CancelDisposition.KEEP_AS_HISTORY
    assert result.released_payment_ids == []
    assert await ledger.queries.unallocated_balance("client-1") == balance_before
    assert {pid: p.model_dump() for pid, p in ledger.payments.docs.items()} == before
    # cancelled invoice no longer counts as owed; its payments still count as paid
    assert await ledger.queries.client_outstanding_total("client-1") == Decimal("0.00")


@pytest.mark.asyncio
async def test_cancel_with_payments_requires_disposition(ledger):
    _seed(ledger)

    with pytest.raises(ValidationError):
        await ledger.invoice_service.cancel_invoice("inv-1")

    assert ledger.invoices.docs["inv-1"].status == InvoiceStatus.ACTIVE
    assert ledger.stored("p1").document_id == "inv-1"


@pytest.mark.asyncio
async def test_cancel_without_payments_needs_no_disposition(ledger):
    _seed(ledger)

    result = await ledger.invoice_service.cancel_invoice("inv-2")

    assert result.status == InvoiceStatus.CANCELLED
    assert result.disposition is None
    assert result.released_amount == Decimal("0.00")


@pytest.mark.asyncio
async def test_restore_reactivates_without_reallocating(ledger):
    _seed(ledger)
    await ledger.invoice_service.cancel_invoice("inv-1", CancelDisposition.MOVE_TO_ACCOUNT)

    restored = await ledger.invoice_service.restore_invoice("inv-1")

    assert restored.status == InvoiceStatus.ACTIVE
    assert await ledger.queries.outstanding("inv-1") == Decimal("300.00")
    assert ledger.stored("p1").document_id is None


@pytest.mark.asyncio
async def test_cancel_unknown_invoice(ledger):
    with pytest.raises(NotFoundError):
        await ledger.invoice_service.cancel_invoice("nope", CancelDisposition.MOVE_TO_ACCOUNT)
    with pytest.raises(NotFoundError):
        await ledger.invoice_service.restore_invoice("nope")
