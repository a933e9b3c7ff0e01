"""Tests for structured logging."""

import json
import sys
import logging

from app.core.logging import (
    CorrelationIdFilter,
    StructuredFormatter,
    clear_correlation_id,
    get_correlation_id,
    set_correlation_id,
)


def _record(msg: str = "Pipeline run started", **extra) -> logging.LogRecord:
    record = logging.LogRecord(
        name="app.modules.transcoding.tasks",
        level=logging.INFO,
        pathname=__file__,
        lineno=10,
        msg=msg,
        args=(),
        exc_info=None,
    )
    for key, value in extra.items():
        setattr(record, key, value)
    return record


class TestCorrelationId:
    def test_set_and_clear(self) -> None:
        set_correlation_id("run-123")
        assert get_correlation_id() == "run-123"

        clear_correlation_id()
        assert get_correlation_id() != "run-123"

    def test_filter_stamps_record(self) -> None:
        set_correlation_id("run-456")
        record = _record()

        assert CorrelationIdFilter().filter(record) is True
        assert record.correlation_id == "run-456"
        clear_correlation_id()


class TestStructuredFormatter:
    def test_json_fields(self) -> None:
        set_correlation_id("run-789")
        output = json.loads(StructuredFormatter().format(_record(video_id="v1", resolution="720p")))
        clear_correlation_id()

        assert output["level"] == "INFO"
        assert output["message"] == "Pipeline run started"
        assert output["correlation_id"] == "run-789"
        assert output["extra"] == {"video_id": "v1", "resolution": "720p"}

    def test_unserializable_extra_is_stringified(self) -> None:
        output = json.loads(StructuredFormatter().format(_record(path=object())))

        assert isinstance(output["extra"]["path"], str)

    def test_exception_included(self) -> None:
        try:
            raise RuntimeError("ffmpeg vanished")
        except RuntimeError:
            record = _record()
            record.exc_info = sys.exc_info()

        output = json.loads(StructuredFormatter().format(record))

        assert output["exception"]["type"] == "RuntimeError"
        assert output["exception"]["message"] == "ffmpeg vanished"
