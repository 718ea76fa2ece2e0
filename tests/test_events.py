"""Tests for payroll domain events.

Tests verify:
1. Events are immutable and serializable
2. The emitter routes by type and category
3. Batches hold events until the boundary closes
4. Handler errors are isolated
"""

import json
from dataclasses import FrozenInstanceError
from datetime import date, datetime, timezone
from decimal import Decimal
from uuid import uuid4

import pytest

from peso_payroll.events import (
    AdjustmentApplied,
    EventCategory,
    EventEmitter,
    EventMetadata,
    LoanCompleted,
    PaymentStatusChanged,
    PayrollPeriodCreated,
    PayslipGenerated,
    RecordingHandler,
)

NOW = datetime(2025, 1, 16, 2, 0, tzinfo=timezone.utc)


def _meta(**kwargs) -> EventMetadata:
    return EventMetadata.create(NOW, **kwargs)


def _period_created() -> PayrollPeriodCreated:
    return PayrollPeriodCreated(
        metadata=_meta(),
        payroll_period_id=uuid4(),
        period_number="2025-01-B",
        period_start=date(2025, 1, 16),
        period_end=date(2025, 1, 31),
        payment_date=date(2025, 2, 5),
    )


def _payment_changed() -> PaymentStatusChanged:
    return PaymentStatusChanged(
        metadata=_meta(),
        payment_id=uuid4(),
        from_status="processing",
        to_status="paid",
    )


class TestEventMetadata:
    """Test EventMetadata creation."""

    def test_create_generates_ids(self):
        """Test that ids are generated and the timestamp kept."""
        meta = _meta()
        assert meta.event_id is not None
        assert meta.correlation_id is not None
        assert meta.timestamp == NOW
        assert meta.actor_type == "system"

    def test_correlation_id_is_kept(self):
        """Test that related events share a correlation id."""
        correlation_id = uuid4()
        assert _meta(correlation_id=correlation_id).correlation_id == correlation_id


class TestEventTypes:
    """Test event structure and serialization."""

    def test_events_are_frozen(self):
        """Test events cannot be mutated."""
        event = _period_created()
        with pytest.raises(FrozenInstanceError):
            event.period_number = "2025-02-A"

    def test_to_dict(self):
        """Test JSON-safe serialization."""
        event = AdjustmentApplied(
            metadata=_meta(),
            adjustment_id=uuid4(),
            base_calculation_id=uuid4(),
            new_calculation_id=uuid4(),
            signed_amount=Decimal("-250.00"),
        )
        data = event.to_dict()

        assert data["event_type"] == "AdjustmentApplied"
        assert data["signed_amount"] == "-250.00"
        assert data["adjustment_id"] == str(event.adjustment_id)
        assert data["metadata"]["timestamp"] == NOW.isoformat()
        assert json.loads(event.to_json())["event_type"] == "AdjustmentApplied"

    def test_dates_serialize_as_iso(self):
        """Test date fields become ISO strings."""
        assert _period_created().to_dict()["period_start"] == "2025-01-16"

    @pytest.mark.parametrize(
        "event,category",
        [
            (_period_created(), EventCategory.PERIOD),
            (_payment_changed(), EventCategory.DISBURSEMENT),
            (
                PayslipGenerated(
                    metadata=_meta(),
                    payslip_id=uuid4(),
                    payslip_number="PS-2025-01-B-0001",
                    employee_id=uuid4(),
                ),
                EventCategory.DISBURSEMENT,
            ),
            (
                LoanCompleted(
                    metadata=_meta(), loan_id=uuid4(), employee_id=uuid4(), total_paid=Decimal("1")
                ),
                EventCategory.LOAN,
            ),
        ],
    )
    def test_categories(self, event, category):
        """Test each event reports its routing category."""
        assert event.category == category


class TestEventEmitter:
    """Test handler routing."""

    def test_type_filter(self):
        """Test handlers registered for a type only see that type."""
        emitter = EventEmitter()
        periods = RecordingHandler()
        emitter.on(PayrollPeriodCreated, periods)

        emitter.emit(_period_created())
        emitter.emit(_payment_changed())

        assert [e.event_type for e in periods.events] == ["PayrollPeriodCreated"]

    def test_type_list(self):
        """Test registration for several types."""
        emitter = EventEmitter()
        handler = RecordingHandler()
        emitter.on([PayrollPeriodCreated, PaymentStatusChanged], handler)

        emitter.emit(_period_created())
        emitter.emit(_payment_changed())

        assert len(handler.events) == 2

    def test_category_filter(self):
        """Test category routing."""
        emitter = EventEmitter()
        disbursement = RecordingHandler()
        emitter.on_category(EventCategory.DISBURSEMENT, disbursement)

        emitter.emit(_period_created())
        emitter.emit(_payment_changed())

        assert len(disbursement.of_type(PaymentStatusChanged)) == 1
        assert disbursement.of_type(PayrollPeriodCreated) == []

    def test_off(self):
        """Test unregistering a handler."""
        emitter = EventEmitter()
        handler = RecordingHandler()
        emitter.on_all(handler)
        emitter.off(handler)

        emitter.emit(_period_created())
        assert handler.events == []

    def test_handler_errors_are_isolated(self):
        """Test that a failing handler does not stop the others."""
        emitter = EventEmitter()
        handler = RecordingHandler()

        def broken(event):
            raise RuntimeError("mailer down")

        emitter.on_all(broken)
        emitter.on_all(handler)

        errors = emitter.emit(_period_created())

        assert len(errors) == 1
        assert isinstance(errors[0], RuntimeError)
        assert len(handler.events) == 1


class TestEventBatch:
    """Test batching at transaction boundaries."""

    def test_events_held_until_exit(self):
        """Test that batched events are delivered on exit."""
        emitter = EventEmitter()
        handler = RecordingHandler()
        emitter.on_all(handler)

        with emitter.batch() as batch:
            batch.add(_period_created())
            emitter.emit(_payment_changed())
            assert handler.events == []

        assert len(handler.events) == 2

    def test_batch_discarded_on_error(self):
        """Test that a failed unit of work delivers nothing."""
        emitter = EventEmitter()
        handler = RecordingHandler()
        emitter.on_all(handler)

        with pytest.raises(ValueError):
            with emitter.batch() as batch:
                batch.add(_period_created())
                raise ValueError("rollback")

        assert handler.events == []
        emitter.emit(_payment_changed())
        assert len(handler.events) == 1

    def test_batch_collects_handler_errors(self):
        """Test handler errors surface on the batch."""
        emitter = EventEmitter()

        def broken(event):
            raise RuntimeError("boom")

        emitter.on_all(broken)
        with emitter.batch() as batch:
            batch.add(_period_created())

        assert len(batch.errors) == 1
