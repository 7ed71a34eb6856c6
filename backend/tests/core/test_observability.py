"""Tests for structured logging and worker metrics."""

import json
import logging

from lesson_media.core.logging import (
    CorrelationIdFilter,
    StructuredFormatter,
    asset_context,
    clear_correlation_id,
    correlation_id_var,
    log_error,
)
from lesson_media.core.metrics import (
    REGISTRY,
    RENDITIONS_TOTAL,
    get_content_type,
    get_metrics,
    set_app_info,
)


def _record(message: str = "hello", **extra) -> logging.LogRecord:
    record = logging.LogRecord("lesson_media.test", logging.INFO, __file__, 10, message, (), None)
    for key, value in extra.items():
        setattr(record, key, value)
    return record


class TestStructuredLogging:
    """Tests for the JSON formatter and correlation IDs."""

    def test_formats_json_with_extra_fields(self) -> None:
        formatter = StructuredFormatter()
        output = json.loads(formatter.format(_record(tier="720p", correlation_id="abc")))

        assert output["message"] == "hello"
        assert output["level"] == "INFO"
        assert output["correlation_id"] == "abc"
        assert output["tier"] == "720p"
        assert "extra" not in output

    def test_non_serializable_extra_is_stringified(self) -> None:
        output = json.loads(StructuredFormatter().format(_record(path=object())))
        assert isinstance(output["extra"]["path"], str)

    def test_asset_context_binds_and_restores(self) -> None:
        clear_correlation_id()
        with asset_context("asset-123") as cid:
            assert cid == "asset-123"
            record = _record()
            CorrelationIdFilter().filter(record)
            assert record.correlation_id == "asset-123"
        assert correlation_id_var.get() is None

    def test_log_error_includes_exception(self, caplog) -> None:
        logger = logging.getLogger("lesson_media.test")
        with caplog.at_level(logging.ERROR, logger="lesson_media.test"):
            log_error(logger, "Encode failed", exception=ValueError("bad"), tier="480p")

        record = caplog.records[-1]
        assert record.tier == "480p"
        assert record.exc_info[0] is ValueError


class TestMetrics:
    """Tests for the private Prometheus registry."""

    def test_rendition_counter_is_exported(self) -> None:
        before = REGISTRY.get_sample_value(
            "media_renditions_total", {"tier": "probe-test", "result": "success"}
        ) or 0.0
        RENDITIONS_TOTAL.labels(tier="probe-test", result="success").inc()

        after = REGISTRY.get_sample_value(
            "media_renditions_total", {"tier": "probe-test", "result": "success"}
        )
        assert after == before + 1
        assert b"media_renditions_total" in get_metrics()

    def test_app_info(self) -> None:
        set_app_info("1.2.3", "test")
        assert REGISTRY.get_sample_value(
            "lesson_media_app_info", {"version": "1.2.3", "environment": "test"}
        ) == 1.0
        assert get_content_type().startswith("text/plain")
