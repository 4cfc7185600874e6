# frs/tests/test_logging.py
import io
import json
import logging

from frs import logging as frs_logging


def _capture():
    buf = io.StringIO()
    handler = logging.StreamHandler(buf)
    handler.setFormatter(frs_logging.JSONFormatter())
    log = logging.getLogger("frs.test.capture")
    log.handlers[:] = [handler]
    log.setLevel(logging.DEBUG)
    log.propagate = False
    return log, buf


def test_envelope_and_extras():
    log, buf = _capture()
    log.info("hello", extra={"row_id": "1:2026-01", "attempt": 2, "api_key": "s3cret", "n": 3})
    evt = json.loads(buf.getvalue())
    assert evt["msg"] == "hello"
    assert evt["lvl"] == "INFO"
    assert evt["row_id"] == "1:2026-01"
    assert evt["attempt"] == 2
    assert evt["meta"]["api_key"] == "***"
    assert evt["meta"]["n"] == 3


def test_bound_context_and_explicit_override():
    log, buf = _capture()
    frs_logging.reset()
    frs_logging.bind(row_id="ctx-row", asset_id=9)
    try:
        log.warning("w", extra={"row_id": "explicit"})
    finally:
        frs_logging.reset()
    evt = json.loads(buf.getvalue())
    assert evt["row_id"] == "explicit"
    assert evt["asset_id"] == 9


def test_exception_fields():
    log, buf = _capture()
    try:
        raise RuntimeError("boom")
    except RuntimeError:
        log.exception("failed")
    evt = json.loads(buf.getvalue())
    assert evt["exc_type"] == "RuntimeError"
    assert "boom" in evt["stack"]


def test_scrub_dict_nested():
    out = frs_logging.scrub_dict({"Authorization": "Bearer x", "inner": {"private_key": "0x1", "ok": 1}})
    assert out == {"Authorization": "***", "inner": {"private_key": "***", "ok": 1}}
