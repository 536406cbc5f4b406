# -*- coding: utf-8 -*-
"""
test_progress.py - 进度报告测试
"""

import logging

from assetmend.reconcile.progress import ProgressReporter


class FakeClock:
    def __init__(self):
        self.now = 100.0

    def __call__(self):
        return self.now


class TestProgressReporter:
    def test_callback_at_interval_and_end(self):
        calls = []
        reporter = ProgressReporter("scan", 5, callback=lambda *args: calls.append(args), interval=2)

        reports = [reporter.increment() for _ in range(5)]

        assert reports == [False, True, False, True, True]
        assert [c[:2] for c in calls] == [(2, 5), (4, 5), (5, 5)]

    def test_eta_and_progress_string(self, caplog):
        clock = FakeClock()
        reporter = ProgressReporter("scan", 4, interval=2, clock=clock)
        assert reporter.progress_string() == "[0/4 0% eta ?]"

        clock.now += 10
        with caplog.at_level(logging.DEBUG, logger="assetmend.reconcile.progress"):
            reporter.increment(2)

        assert reporter.eta_seconds() == 10
        assert "scan [2/4 50% eta 10s]" in caplog.text

    def test_callback_failure_is_ignored(self, caplog):
        def broken(processed, total, eta):
            raise RuntimeError("observer gone")

        reporter = ProgressReporter("scan", 1, callback=broken)

        with caplog.at_level(logging.WARNING, logger="assetmend.reconcile.progress"):
            assert reporter.increment() is True

        assert "observer gone" in caplog.text
