"""
Tests for logging, metrics and health checks.
"""

import json
import logging

import pytest

from conftest import ADMIN, DISTRIBUTOR, PRODUCER, STRANGER
from provenance.core import UnauthorizedError
from provenance.observability import (
    ContextLogger,
    MetricsCollector,
    StructuredFormatter,
    TextFormatter,
    actor_var,
    check_health,
    correlation_id_var,
    get_logger,
    get_metrics,
    operation_context,
    operation_var,
)


def _record(msg="Product registered", **extra):
    record = logging.LogRecord(
        name="provenance.core.ledger",
        level=logging.INFO,
        pathname=__file__,
        lineno=1,
        msg=msg,
        args=(),
        exc_info=None,
    )
    for key, value in extra.items():
        setattr(record, key, value)
    return record


class TestFormatters:

    def test_structured_output(self):
        with operation_context("register", actor=PRODUCER, correlation_id="abc12345"):
            line = StructuredFormatter().format(_record(product_id=7))

        data = json.loads(line)
        assert data["level"] == "INFO"
        assert data["logger"] == "provenance.core.ledger"
        assert data["message"] == "Product registered"
        assert data["operation"] == "register"
        assert data["actor"] == PRODUCER
        assert data["correlation_id"] == "abc12345"
        assert data["product_id"] == 7
        assert "msg" not in data

    def test_structured_without_context(self):
        data = json.loads(StructuredFormatter().format(_record()))
        assert "operation" not in data
        assert "actor" not in data

    def test_unserializable_extra_stringified(self):
        data = json.loads(StructuredFormatter().format(_record(roles={"producer"})))
        assert data["roles"] == "{'producer'}"

    def test_text_prefix(self):
        with operation_context("transfer", correlation_id="deadbeef"):
            line = TextFormatter().format(_record("Ownership transferred"))
        assert "[deadbeef transfer] provenance.core.ledger: Ownership transferred" in line

    def test_text_without_context(self):
        line = TextFormatter().format(_record())
        assert "INFO" in line
        assert "[" not in line.split("INFO", 1)[1]


class TestContextLogger:

    def test_keyword_fields_become_extra(self):
        logger = get_logger("provenance.test")
        assert isinstance(logger, ContextLogger)

        msg, kwargs = logger.process("hello", {"product_id": 3, "exc_info": False})
        assert msg == "hello"
        assert kwargs == {"exc_info": False, "extra": {"product_id": 3}}

    def test_fields_reach_records(self, caplog):
        logger = get_logger("provenance.test")
        with caplog.at_level(logging.INFO, logger="provenance.test"):
            logger.info("Status updated", product_id=9, new_status="in_transit")

        (record,) = caplog.records
        assert record.product_id == 9
        assert record.new_status == "in_transit"


class TestOperationContext:

    def test_sets_and_resets(self):
        with operation_context("grant_role", actor=ADMIN, correlation_id="c0ffee00") as cid:
            assert cid == "c0ffee00"
            assert operation_var.get() == "grant_role"
            assert actor_var.get() == ADMIN
            assert correlation_id_var.get() == "c0ffee00"

        assert operation_var.get() == ""
        assert actor_var.get() == ""
        assert correlation_id_var.get() == ""

    def test_generates_correlation_id(self):
        with operation_context("pause") as cid:
            assert len(cid) == 8
            assert correlation_id_var.get() == cid

    def test_nested_contexts_restore_outer(self):
        with operation_context("outer", correlation_id="11111111"):
            with operation_context("inner", correlation_id="22222222"):
                assert operation_var.get() == "inner"
            assert operation_var.get() == "outer"
            assert correlation_id_var.get() == "11111111"

    def test_resets_on_error(self):
        with pytest.raises(RuntimeError):
            with operation_context("register", actor=PRODUCER):
                raise RuntimeError("boom")
        assert actor_var.get() == ""


class TestMetrics:

    def test_appends_counted(self, ledger, coffee):
        summary = get_metrics().get_summary()
        # Bootstrap, four role grants and the registration
        assert summary["facts_appended"] == 6
        assert summary["append_latency_p50_ms"] is not None

    def test_empty_summary(self):
        summary = MetricsCollector().get_summary()
        assert summary["facts_appended"] == 0
        assert summary["append_latency_p99_ms"] is None
        assert summary["rejections_by_kind"] == {}

    def test_latency_window_bounded(self):
        metrics = MetricsCollector()
        for i in range(1200):
            metrics.record_append(float(i))
        assert metrics.facts_appended == 1200
        assert len(metrics.append_latencies_ms) == 1000
        assert metrics.append_latencies_ms[0] == 200.0

    def test_percentiles(self):
        metrics = MetricsCollector()
        for i in range(1, 101):
            metrics.record_append(float(i))
        summary = metrics.get_summary()
        assert summary["append_latency_p50_ms"] == 51.0
        assert summary["append_latency_p99_ms"] == 100.0

    def test_rejections_by_kind(self):
        metrics = MetricsCollector()
        metrics.record_rejection("unauthorized")
        metrics.record_rejection("unauthorized")
        metrics.record_rejection("system_paused")
        assert metrics.mutations_rejected == 3
        assert metrics.rejections_by_kind == {"unauthorized": 2, "system_paused": 1}


class TestRejectionLogging:

    def test_rejection_logged_with_context(self, ledger, coffee, caplog):
        with caplog.at_level(logging.WARNING, logger="provenance"):
            with pytest.raises(UnauthorizedError):
                ledger.transfer(coffee, DISTRIBUTOR, caller=STRANGER)

        (record,) = [r for r in caplog.records if r.getMessage() == "Mutation rejected"]
        assert record.levelno == logging.WARNING
        assert record.error_kind == "unauthorized"
        assert "current owner" in record.error

    def test_success_logged_at_info(self, ledger, coffee, caplog):
        with caplog.at_level(logging.INFO, logger="provenance"):
            ledger.transfer(coffee, DISTRIBUTOR, caller=PRODUCER)

        messages = [r.getMessage() for r in caplog.records]
        assert "Ownership transferred" in messages
        assert "Mutation rejected" not in messages


class TestHealth:

    def test_liveness_only(self):
        status = check_health()
        assert status.healthy
        assert set(status.checks) == {"liveness"}

    def test_healthy_ledger(self, ledger, coffee, fact_log):
        status = check_health(ledger=ledger, fact_log=fact_log)

        assert status.healthy
        assert status.checks["fact_log"]["fact_count"] == 6
        assert status.checks["fact_log"]["last_hash"].endswith("...")
        assert status.checks["chain_integrity"]["valid"] is True
        assert status.checks["chain_integrity"]["product_count"] == 1
        assert status.checks["chain_integrity"]["paused"] is False

    def test_tampered_log_unhealthy(self, ledger, coffee, fact_log):
        fact_log.list_all()[-1].payload["name"] = "Decaf"

        status = check_health(ledger=ledger, fact_log=fact_log)
        assert not status.healthy
        assert status.checks["chain_integrity"]["status"] == "unhealthy"

    def test_unreachable_store_unhealthy(self):
        class BrokenLog:
            def get_head(self):
                raise ConnectionError("database unreachable")

        status = check_health(fact_log=BrokenLog())
        assert not status.healthy
        assert status.checks["fact_log"] == {
            "status": "unhealthy",
            "error": "database unreachable",
        }
