"""
Tests for credential redaction in log records
"""
import logging

from utils.logging import SensitiveDataFilter, highlight_url


def make_record(msg, *args):
    return logging.LogRecord("bridge", logging.INFO, __file__, 1, msg, args, None)


def test_query_string_credentials_are_redacted():
    record = make_record("Connecting to wss://ws.kite.trade?api_key=abc123&access_token=xyz789")
    SensitiveDataFilter().filter(record)

    assert "abc123" not in record.msg
    assert "xyz789" not in record.msg
    assert "[REDACTED]" in record.msg


def test_json_credentials_are_redacted():
    record = make_record('Received {"type": "subscribe", "api_key": "k1", "token": "t1", "secret": "s1"}')
    SensitiveDataFilter().filter(record)

    for value in ('"k1"', '"t1"', '"s1"'):
        assert value not in record.msg


def test_arguments_are_redacted():
    record = make_record("Subscribing with %s", "token=abcdef")
    SensitiveDataFilter().filter(record)
    assert record.getMessage() == "Subscribing with token=[REDACTED]"


def test_highlight_url_keeps_url_text():
    assert "ws://127.0.0.1:8080" in highlight_url("ws://127.0.0.1:8080")
