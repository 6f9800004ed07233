from src.utils import storage


def _use_tmp(monkeypatch, tmp_path):
    processed = tmp_path / "processed"
    monkeypatch.setattr(storage, "DATA_PROCESSED", processed)
    monkeypatch.setattr(storage, "UPLOADS_DIR", tmp_path / "uploads")
    monkeypatch.setattr(storage, "JOBS_PATH", processed / "jobs.json")


def test_job_history_newest_first_with_limit(monkeypatch, tmp_path):
    _use_tmp(monkeypatch, tmp_path)

    storage.append_job_history({"status": "started", "started_at": "2024-01-01T00:00:00+00:00"})
    storage.append_job_history({"status": "failed", "started_at": "2024-01-02T00:00:00+00:00"})
    storage.append_job_history({"status": "skipped"})

    history = storage.load_jobs_history()
    assert [entry["status"] for entry in history] == ["skipped", "failed", "started"]
    assert len(storage.load_jobs_history(limit=1)) == 1


def test_corrupt_history_reads_as_empty(monkeypatch, tmp_path):
    _use_tmp(monkeypatch, tmp_path)
    storage.ensure_dirs()
    storage.JOBS_PATH.write_text("{not json", encoding="utf-8")

    assert storage.load_jobs_history() == []


def test_json_loads_falls_back_to_default():
    assert storage.json_loads(None, []) == []
    assert storage.json_loads("[1", {"a": 1}) == {"a": 1}
    assert storage.json_loads('["x"]', []) == ["x"]
