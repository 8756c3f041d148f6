"""
Observability Validation Test

This test validates the observability stack:
1. Metrics collection works (upstream traffic, slice outcomes, stage timings)
2. Structured logging carries the correlation context (run, slice, client)
3. Audit events fan out to every backend and persist to the ledger

Pass criteria: from a run_id you can find its log lines, its metrics and
its audit trail.
"""

import json
import logging
from datetime import datetime

import pytest


def test_observability_imports():
    """Verify all observability modules import correctly."""
    from core.observability import (
        MetricsCollector, get_metrics,
        get_logger, configure_logging, CorrelationContext, with_correlation,
    )
    assert MetricsCollector is not None
    assert get_metrics() is MetricsCollector.instance()
    assert CorrelationContext is not None


class TestMetricsCollector:
    """Test the metrics collection system."""

    def test_singleton_instance(self):
        """MetricsCollector returns same instance."""
        from core.observability.metrics import MetricsCollector
        m1 = MetricsCollector.instance()
        m2 = MetricsCollector.instance()
        assert m1 is m2

    def test_upstream_counters(self):
        """Track requests, pages, rate limits, retries and failures."""
        from core.observability.metrics import MetricsCollector
        mc = MetricsCollector.instance()

        baseline = mc.get_summary()["upstream"]

        mc.record_request()
        mc.record_request()
        mc.record_page_fetched(items=250)
        mc.record_rate_limited()
        mc.record_retry()
        mc.record_upstream_failure()

        upstream = mc.get_summary()["upstream"]
        assert upstream["requests"] == baseline["requests"] + 2
        assert upstream["pages_fetched"] == baseline["pages_fetched"] + 1
        assert upstream["items_fetched"] == baseline["items_fetched"] + 250
        assert upstream["rate_limited"] == baseline["rate_limited"] + 1
        assert upstream["retries"] == baseline["retries"] + 1
        assert upstream["failures"] == baseline["failures"] + 1

    def test_slice_outcomes(self):
        """Slices are counted by status."""
        from core.observability.metrics import MetricsCollector
        mc = MetricsCollector.instance()

        before = mc.get_summary()["slices"].get("truncated", 0)
        mc.record_slice("truncated")

        assert mc.get_summary()["slices"]["truncated"] == before + 1

    def test_timing_percentile_calculation(self):
        """Calculate p95 timing correctly."""
        from core.observability.metrics import MetricsCollector
        mc = MetricsCollector.instance()

        # Add 100 samples: 1-100ms to a unique stage
        test_stage = f"test_stage_{datetime.now().timestamp()}"
        for i in range(1, 101):
            mc.record_stage_time(test_stage, i)

        stats = mc.get_timing_stats(test_stage)

        # Average should be ~50.5
        assert 49 <= stats["average_ms"] <= 52
        # P95 should be ~95
        assert 93 <= stats["p95_ms"] <= 97
        assert stats["samples"] == 100
        assert test_stage in mc.get_summary()["stages"]

    def test_unknown_stage_is_zero(self):
        from core.observability.metrics import MetricsCollector
        stats = MetricsCollector.instance().get_timing_stats("never-recorded")
        assert stats == {"average_ms": 0.0, "p95_ms": 0.0, "samples": 0}


class TestCorrelatedLogging:
    """Test structured logging with correlation IDs."""

    @staticmethod
    def make_record(msg="Test message"):
        return logging.LogRecord(
            name="test",
            level=logging.INFO,
            pathname="test.py",
            lineno=10,
            msg=msg,
            args=(),
            exc_info=None,
        )

    def test_correlation_context_creation(self):
        """Create correlation context with all fields."""
        from core.observability.logging import CorrelationContext

        ctx = CorrelationContext(
            run_id="sync-001",
            workflow_id="billing-sync-001",
            activity_name="fetch_transactions_activity",
            filter_combination="tx=Charge|ref=Shipment",
        )

        assert ctx.to_dict() == {
            "run_id": "sync-001",
            "workflow_id": "billing-sync-001",
            "activity_name": "fetch_transactions_activity",
            "filter_combination": "tx=Charge|ref=Shipment",
        }
        merged = ctx.merge(client_id="acme", run_id=None)
        assert merged.run_id == "sync-001"
        assert merged.client_id == "acme"

    def test_context_nesting_and_reset(self):
        """Nested with_correlation blocks merge, and exit restores the outer context."""
        from core.observability.logging import get_correlation_context, with_correlation

        assert get_correlation_context().run_id is None

        with with_correlation(run_id="sync-TEST"):
            with with_correlation(filter_combination="tx=Refund"):
                inner = get_correlation_context()
                assert inner.run_id == "sync-TEST"
                assert inner.filter_combination == "tx=Refund"
            assert get_correlation_context().filter_combination is None

        assert get_correlation_context().run_id is None

    def test_structured_formatter_json_output(self):
        """StructuredFormatter outputs valid JSON with the context and extra fields."""
        from core.observability.logging import StructuredFormatter, with_correlation

        formatter = StructuredFormatter()

        with with_correlation(run_id="sync-001", client_id="acme"):
            record = self.make_record()
            record.extra_fields = {"inserted": 10}
            data = json.loads(formatter.format(record))

        assert data["message"] == "Test message"
        assert data["level"] == "INFO"
        assert data["run_id"] == "sync-001"
        assert data["client_id"] == "acme"
        assert data["inserted"] == 10

    def test_human_readable_formatter(self):
        from core.observability.logging import HumanReadableFormatter, with_correlation

        formatter = HumanReadableFormatter()
        assert "[-]: Plain" in formatter.format(self.make_record("Plain"))

        with with_correlation(run_id="sync-001", filter_combination="tx=Charge"):
            line = formatter.format(self.make_record("Slice complete"))
        assert "[sync-001/tx=Charge]: Slice complete" in line

    def test_correlated_logger_passes_extra_fields(self, caplog):
        from core.observability.logging import get_logger

        logger = get_logger("test.correlated")
        with caplog.at_level(logging.INFO, logger="test.correlated"):
            logger.info("Upserted batch", extra_fields={"inserted": 3})

        assert caplog.records[-1].extra_fields == {"inserted": 3}


class TestAudit:
    """Audit events for changes to settled billing data."""

    def test_fan_out_to_backends(self):
        from core.audit import AuditEventType, AuditLogger, InMemoryAuditBackend

        first, second = InMemoryAuditBackend(), InMemoryAuditBackend()
        audit = AuditLogger()
        audit.add_backend(first)
        audit.add_backend(second)

        audit.log_warning(
            AuditEventType.MARKUP_RULE_MISSING, "2 transactions have no rule",
            run_id="sync-001", details={"transaction_ids": ["t1", "t2"]},
        )

        for backend in (first, second):
            event = backend.query(event_type="MARKUP_RULE_MISSING")[0]
            assert event.severity.value == "WARN"
            assert event.run_id == "sync-001"
        assert audit.query()[0].details["transaction_ids"] == ["t1", "t2"]

    def test_sqlite_backend_round_trip(self, db_path):
        from core.audit import AuditEventType, get_audit_logger

        audit = get_audit_logger(db_path)
        audit.log_info(
            AuditEventType.ATTRIBUTION_CORRECTED, "t1 moved to acme-eu",
            transaction_id="t1", client_id="acme-eu", actor="ops@example.com",
            details={"previous_client_id": "acme"},
        )
        audit.log_info(AuditEventType.INVOICE_LINKED, "Linked 3 transactions")

        events = get_audit_logger(db_path).query(transaction_id="t1")
        assert len(events) == 1
        assert events[0].actor == "ops@example.com"
        assert events[0].details == {"previous_client_id": "acme"}
        assert len(audit.query(event_type="INVOICE_LINKED")) == 1


if __name__ == "__main__":
    pytest.main([__file__, "-v", "-s"])
