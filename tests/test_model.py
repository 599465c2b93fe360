"""Tests for the batch failure set and outcome types."""

import threading

import pytest

from forwarder_lambda.model import BatchFailureSet, Delivered, Failed


class TestBatchFailureSet:
    def test_duplicates_are_collapsed(self):
        failures = BatchFailureSet()
        failures.add("m1")
        failures.add("m1")

        assert len(failures) == 1
        assert "m1" in failures
        assert failures.finalize() == ["m1"]

    def test_finalize_follows_batch_order(self):
        failures = BatchFailureSet()
        for message_id in ("m3", "m1"):
            failures.add(message_id)

        assert failures.finalize(["m1", "m2", "m3"]) == ["m1", "m3"]

    def test_finalized_set_is_read_only(self):
        failures = BatchFailureSet()
        failures.add("m1")
        assert failures.finalize() == ["m1"]

        with pytest.raises(RuntimeError):
            failures.add("m2")
        assert failures.finalize(["m2", "m1"]) == ["m1"]

    def test_concurrent_adds(self):
        failures = BatchFailureSet()
        ids = [f"m{i}" for i in range(200)]

        def report(chunk):
            for message_id in chunk:
                failures.add(message_id)

        threads = [threading.Thread(target=report, args=(ids[i::8],)) for i in range(8)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert failures.finalize(ids) == ids

    def test_reads_wait_for_writers(self):
        failures = BatchFailureSet()
        seen = []

        def read():
            seen.append((len(failures), "m1" in failures))

        with failures._lock:
            reader = threading.Thread(target=read)
            reader.start()
            reader.join(timeout=0.1)
            assert reader.is_alive()
            failures._ids.add("m1")
        reader.join()

        assert seen == [(1, True)]


class TestForwardOutcome:
    def test_delivered_below_400_is_ok(self):
        assert Delivered(200).ok
        assert Delivered(399).ok
        assert not Delivered(400).ok

    def test_failed_is_never_ok(self):
        assert not Failed("timeout").ok
