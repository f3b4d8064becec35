"""Unit tests for the contextual logger."""

import json
import logging

from cream.core.logging import JSONFormatter, _ContextualLogger


def make_record(msg="Starting check", **extra):
    record = logging.LogRecord(
        name="cream",
        level=logging.INFO,
        pathname="/srv/backend/cream/platform/billing/trial_reconciler.py",
        lineno=42,
        msg=msg,
        args=(),
        exc_info=None,
        func="check_trial_ending",
    )
    for key, value in extra.items():
        setattr(record, key, value)
    return record


class TestContextualLogger:
    """Tests for _ContextualLogger."""

    def test_with_context_merges_dimensions(self):
        base = _ContextualLogger(logging.getLogger("cream.test"), dimensions={"check": "trial"})

        scoped = base.with_context(organization_id=7)
        msg, kwargs = scoped.process("skipped", {})

        assert msg == "skipped"
        assert kwargs["extra"]["custom_dimensions"] == {"check": "trial", "organization_id": 7}
        assert base.dimensions == {"check": "trial"}

    def test_with_prefix_keeps_dimensions(self):
        base = _ContextualLogger(logging.getLogger("cream.test"), dimensions={"tid": "t-1"})

        msg, kwargs = base.with_prefix("[scheduler] ").process("tick", {})

        assert msg == "[scheduler] tick"
        assert kwargs["extra"]["custom_dimensions"] == {"tid": "t-1"}


class TestJSONFormatter:
    """Tests for JSONFormatter."""

    def test_formats_record_with_dimensions(self):
        record = make_record(custom_dimensions={"check": "trial_ending"})

        entry = json.loads(JSONFormatter().format(record))

        assert entry["message"] == "Starting check"
        assert entry["level"] == "INFO"
        assert entry["module"] == "cream.platform.billing.trial_reconciler"
        assert entry["custom_dimensions"] == {"check": "trial_ending"}

    def test_unserializable_extras_are_stringified(self):
        record = make_record(candidate=object())

        entry = json.loads(JSONFormatter().format(record))

        assert entry["candidate"].startswith("<object object")
