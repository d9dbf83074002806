"""Degradation controller tests."""

from __future__ import annotations

import logging

from taskboard.backend.degradation import DegradationController
from taskboard.shared.enums import DegradationMode, ErrorKind
from taskboard.shared.models import ClassifiedError


def _err(kind: ErrorKind) -> ClassifiedError:
    return ClassifiedError(kind=kind, message=str(kind))


class TestTransitions:
    def test_dispatch_table(self):
        ctrl = DegradationController()
        assert ctrl.on_failure(_err(ErrorKind.CONNECTION_FAILED)) is DegradationMode.CACHE_ONLY
        assert ctrl.on_failure(_err(ErrorKind.PERMISSION_DENIED)) is DegradationMode.READ_ONLY
        assert ctrl.on_failure(_err(ErrorKind.CONSTRAINT_VIOLATION)) is DegradationMode.REDUCED_FEATURES
        assert ctrl.on_failure(_err(ErrorKind.UNKNOWN)) is DegradationMode.REDUCED_FEATURES

    def test_repeat_failure_is_idempotent(self):
        ctrl = DegradationController()
        ctrl.on_failure(_err(ErrorKind.CONNECTION_FAILED))
        ctrl.on_failure(_err(ErrorKind.CONNECTION_FAILED))
        assert len(ctrl.history) == 1
        assert ctrl.history[0].from_mode is DegradationMode.NORMAL
        assert ctrl.history[0].error_kind is ErrorKind.CONNECTION_FAILED

    def test_restore(self, caplog):
        ctrl = DegradationController()
        with caplog.at_level(logging.INFO, logger="taskboard.degradation"):
            ctrl.on_failure(_err(ErrorKind.PERMISSION_DENIED))
            ctrl.restore()
        assert ctrl.mode is DegradationMode.NORMAL
        assert ctrl.history[-1].error_kind is None
        assert "Service degraded" in caplog.text
        assert "Service restored" in caplog.text

    def test_restore_when_normal_records_nothing(self):
        ctrl = DegradationController()
        ctrl.restore()
        assert ctrl.history == []

    def test_history_bounded(self):
        ctrl = DegradationController(history_size=3)
        for _ in range(5):
            ctrl.on_failure(_err(ErrorKind.TIMEOUT))
            ctrl.restore()
        assert len(ctrl.history) == 3


class TestCapabilities:
    def test_normal(self):
        ctrl = DegradationController()
        assert ctrl.allows_writes()
        assert ctrl.allows_storage_reads()
        assert ctrl.allows_non_essential()

    def test_cache_only(self):
        ctrl = DegradationController()
        ctrl.on_failure(_err(ErrorKind.CONNECTION_FAILED))
        assert not ctrl.allows_writes()
        assert not ctrl.allows_storage_reads()
        assert not ctrl.allows_non_essential()

    def test_read_only(self):
        ctrl = DegradationController()
        ctrl.on_failure(_err(ErrorKind.PERMISSION_DENIED))
        assert not ctrl.allows_writes()
        assert ctrl.allows_storage_reads()

    def test_reduced_features(self):
        ctrl = DegradationController()
        ctrl.on_failure(_err(ErrorKind.TRANSACTION_FAILED))
        assert ctrl.allows_writes()
        assert ctrl.allows_storage_reads()
        assert not ctrl.allows_non_essential()
