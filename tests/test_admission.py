from __future__ import annotations

import logging
import threading

import pytest

from engine.admission import AdmissionController
from engine.errors import AdmissionRejected


def test_try_admit_stops_at_ceiling_without_queueing() -> None:
    controller = AdmissionController(max_concurrent=2)
    assert controller.try_admit() is True
    assert controller.try_admit() is True
    assert controller.try_admit() is False
    assert controller.active == 2

    controller.release()
    assert controller.try_admit() is True
    assert controller.stats() == {"active": 2, "max": 2, "available": 0, "rejected": 1}


def test_release_is_floored_at_zero(caplog) -> None:
    controller = AdmissionController(max_concurrent=1)
    with caplog.at_level(logging.WARNING, logger="engine.admission"):
        controller.release()
    assert controller.active == 0
    assert "without matching admit" in caplog.text


def test_admit_rejects_with_capacity_error() -> None:
    controller = AdmissionController(max_concurrent=1)
    session = controller.admit("yt", "abc", "best")

    with pytest.raises(AdmissionRejected) as excinfo:
        controller.admit("yt", "def", "best")

    assert excinfo.value.error == "too_many_streams"
    assert excinfo.value.to_payload()["details"].startswith("Server overloaded (1/1")
    assert session.close() is True
    assert controller.active == 0


def test_session_releases_exactly_once() -> None:
    controller = AdmissionController(max_concurrent=3)
    session = controller.admit("yt", "abc")
    controller.admit("yt", "def")

    assert session.close("failed") is True
    assert session.close("completed") is False
    assert session.outcome == "failed"
    assert controller.active == 1


def test_session_context_manager_releases_on_error() -> None:
    controller = AdmissionController(max_concurrent=1)
    with pytest.raises(RuntimeError):
        with controller.admit("yt", "abc") as session:
            raise RuntimeError("boom")
    assert session.outcome == "failed"
    assert controller.active == 0


def test_concurrent_admissions_never_exceed_ceiling() -> None:
    controller = AdmissionController(max_concurrent=4)
    workers = 32
    barrier = threading.Barrier(workers)
    admitted = []
    lock = threading.Lock()

    def worker():
        barrier.wait()
        ok = controller.try_admit()
        with lock:
            admitted.append(ok)

    threads = [threading.Thread(target=worker) for _ in range(workers)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=5)

    assert admitted.count(True) == 4
    assert controller.active == 4
    assert controller.stats()["rejected"] == workers - 4


def test_reset_clears_active_count() -> None:
    controller = AdmissionController(max_concurrent=2)
    controller.try_admit()
    controller.reset()
    assert controller.active == 0


def test_rejects_non_positive_ceiling() -> None:
    with pytest.raises(ValueError):
        AdmissionController(max_concurrent=0)
