"""Test the download batch progress display"""

from nautune.core.progress import BatchProgress


class TestBatchProgress:
    """Test settling tracks and the bar position"""

    def test_settle_tracks(self):
        with BatchProgress("Kind of Blue", ["t1", "t2", "t3"]) as batch:
            batch.skip("t1")
            batch.advance("t2", 0.5)
            assert batch.pending == ["t2", "t3"]

            batch.finish("t2")
            batch.fail("t3")

        assert batch.done
        assert batch.count("completed") == 1
        assert batch.count("failed") == 1
        assert batch.count("skipped") == 1

    def test_bar_follows_fractions(self):
        with BatchProgress("Mix", ["t1", "t2"]) as batch:
            batch.advance("t1", 0.5)
            batch.advance("t2", 2.0)
            task = batch.progress.tasks[0]

            assert task.completed == 1.5
            assert task.total == 2

    def test_settled_track_ignores_updates(self):
        with BatchProgress("Mix", ["t1"]) as batch:
            batch.fail("t1")
            batch.finish("t1")
            batch.advance("t1", 0.1)
            batch.advance("unknown", 0.5)

        assert batch.count("failed") == 1
        assert batch.count("completed") == 0

    def test_empty_batch_is_done(self):
        with BatchProgress("Nothing", []) as batch:
            assert batch.done
