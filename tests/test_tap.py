"""Tests for the TAP result writer."""

import io

from replisim.core.tap import TapReporter


class TestTapReporter:
    def test_outcomes_and_counters(self):
        stream = io.StringIO()
        tap = TapReporter(stream=stream)
        tap.version()
        tap.ok(1, "enter alice")
        tap.not_ok(2, "has bob alice@1", "expected: a\nactual: b")
        tap.plan(2)

        assert stream.getvalue().splitlines() == [
            "TAP version 13",
            "ok 1 - enter alice",
            "not ok 2 - has bob alice@1",
            "# expected: a",
            "# actual: b",
            "1..2",
        ]
        assert tap.passed == 1
        assert tap.failed == 1
        assert not tap.success

    def test_bail_out(self):
        stream = io.StringIO()
        tap = TapReporter(stream=stream)
        tap.bail_out("no such puppet (stop carol)")
        assert stream.getvalue() == "Bail out! no such puppet (stop carol)\n"
        assert tap.bailed
        assert not tap.success

    def test_empty_diagnostic_writes_nothing(self):
        stream = io.StringIO()
        TapReporter(stream=stream).diagnostic("")
        assert stream.getvalue() == ""
