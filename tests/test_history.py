import pytest

from ch_workbench.history import OUTCOME_ABORTED, OUTCOME_ERROR, OUTCOME_OK, QueryHistory


@pytest.fixture
def history():
    h = QueryHistory()
    yield h
    h.close()


class TestQueryHistory:
    def test_empty(self, history):
        assert len(history) == 0
        assert history.records() == []

    def test_append_keeps_insertion_order(self, history):
        history.append("dev1", "SELECT 1")
        history.append("dev2", "SELECT 2", OUTCOME_ERROR, error="boom")
        history.append("dev1", "SELECT 3", OUTCOME_ABORTED)

        records = history.records()
        assert [r.query for r in records] == ["SELECT 1", "SELECT 2", "SELECT 3"]
        assert [r.seq for r in records] == [1, 2, 3]
        assert records[0].outcome == OUTCOME_OK
        assert not records[0].failed
        assert records[1].failed
        assert records[1].error == "boom"

    def test_append_returns_record(self, history):
        record = history.append("dev1", "SELECT 1", elapsed=0.5)
        assert record.label == "dev1"
        assert record.elapsed == 0.5
        assert history.get(0) == record

    def test_filter_by_label(self, history):
        history.append("dev1", "a")
        history.append("dev2", "b")
        history.append("dev1", "c")
        assert [r.query for r in history.records("dev1")] == ["a", "c"]

    def test_get_negative_index(self, history):
        history.append("dev1", "first")
        history.append("dev1", "last")
        assert history.get(-1).query == "last"
        assert history.get(0).query == "first"

    def test_get_out_of_range(self, history):
        history.append("dev1", "only")
        with pytest.raises(IndexError):
            history.get(1)
        with pytest.raises(IndexError):
            history.get(-2)

    def test_clear(self, history):
        history.append("dev1", "a")
        history.clear()
        assert len(history) == 0
        # sequence keeps growing after a clear
        assert history.append("dev1", "b").seq == 2

    def test_bounded_evicts_oldest(self):
        h = QueryHistory(max_entries=3)
        for i in range(5):
            h.append("dev1", f"q{i}")
        assert h.max_entries == 3
        assert [r.query for r in h.records()] == ["q2", "q3", "q4"]
        h.close()

    def test_zero_means_unbounded(self):
        h = QueryHistory(max_entries=0)
        for i in range(5):
            h.append("dev1", f"q{i}")
        assert h.max_entries is None
        assert len(h) == 5
        h.close()

    def test_persists_to_file(self, tmp_path):
        path = str(tmp_path / "data" / "history.duckdb")
        h1 = QueryHistory(db_path=path)
        h1.append("dev1", "SELECT 1")
        h1.close()

        h2 = QueryHistory(db_path=path)
        assert [r.query for r in h2.records()] == ["SELECT 1"]
        assert h2.append("dev1", "SELECT 2").seq == 2
        h2.close()

    def test_append_never_raises(self):
        h = QueryHistory()
        h.close()
        assert h.append("dev1", "SELECT 1") is None
