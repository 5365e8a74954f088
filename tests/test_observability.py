from __future__ import annotations

import json
import logging
import sys

from sensor_agent.observability import ContextFilter, JsonLogFormatter, configure_logging


def _record(msg: str, **extra) -> logging.LogRecord:
    record = logging.LogRecord("sensor_agent.test", logging.INFO, __file__, 1, msg, (), None)
    for key, value in extra.items():
        setattr(record, key, value)
    return record


def test_json_formatter_includes_agent_context_and_extras():
    record = _record("MQTT connection %s", kind="accelerometer")
    record.args = ("up",)
    ContextFilter("sensor-agent", agent_id="phone-7").filter(record)

    payload = json.loads(JsonLogFormatter().format(record))
    assert payload["message"] == "MQTT connection up"
    assert payload["level"] == "INFO"
    assert payload["service"] == "sensor-agent"
    assert payload["agent_id"] == "phone-7"
    assert payload["request_id"] is None
    assert payload["extra"] == {"kind": "accelerometer"}


def test_json_formatter_uses_record_time():
    record = _record("tick")
    record.created = 0.0
    payload = json.loads(JsonLogFormatter().format(record))
    assert payload["timestamp"] == "1970-01-01T00:00:00+00:00"
    assert "extra" not in payload


def test_json_formatter_keeps_exceptions():
    try:
        raise RuntimeError("broker gone")
    except RuntimeError:
        record = logging.LogRecord("sensor_agent.test", logging.ERROR, __file__, 1, "failed", (), sys.exc_info())
    payload = json.loads(JsonLogFormatter().format(record))
    assert "broker gone" in payload["exception"]


def test_configure_logging_quiets_mqtt_below_debug():
    root = logging.getLogger()
    saved = (root.handlers[:], root.level)
    try:
        handler = configure_logging("sensor-agent", "info", agent_id="phone-7")
        assert root.handlers == [handler]
        assert root.level == logging.INFO
        assert logging.getLogger("mqtt").level == logging.WARNING

        configure_logging("sensor-agent", "debug", quiet_loggers=("sensor_agent.test.noisy",))
        assert logging.getLogger("sensor_agent.test.noisy").level == logging.NOTSET
    finally:
        root.handlers = saved[0]
        root.setLevel(saved[1])
        logging.getLogger("mqtt").setLevel(logging.NOTSET)
