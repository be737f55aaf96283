from __future__ import annotations

import pytest
from pydantic import ValidationError

from mediasync.config import Settings, validate_cron


def test_defaults():
    s = Settings(_env_file=None)
    assert s.activity_sync_interval == "*/5 * * * *"
    assert s.user_sync_interval == "*/5 * * * *"
    assert s.embeddings_sync_interval == "*/15 * * * *"
    assert s.job_cleanup_interval == "*/1 * * * *"
    assert s.old_job_cleanup_interval == "0 3 * * *"
    assert s.full_sync_interval == "0 2 * * *"
    assert s.recent_items_sync_interval == "*/5 * * * *"
    assert s.people_sync_interval == "*/15 * * * *"
    assert s.recent_items_limit == 100
    assert s.people_sync_max_runtime_seconds == 840
    assert s.sync_stale_minutes == 30
    assert s.job_stale_minutes == 10
    assert s.job_result_retention_days == 10
    assert s.embedding_api_batch_size == 20
    assert s.embedding_max_text_length == 8000


def test_env_override(monkeypatch):
    monkeypatch.setenv("FULL_SYNC_INTERVAL", "30 4 * * *")
    monkeypatch.setenv("WORKER_CONCURRENCY", "4")
    s = Settings(_env_file=None)
    assert s.full_sync_interval == "30 4 * * *"
    assert s.worker_concurrency == 4


def test_invalid_cron_rejected():
    with pytest.raises(ValidationError):
        Settings(_env_file=None, activity_sync_interval="every five minutes")
    with pytest.raises(ValidationError):
        Settings(_env_file=None, people_sync_interval="hourly")


class TestValidateCron:
    def test_strips_whitespace(self):
        assert validate_cron("  */10 * * * * ") == "*/10 * * * *"

    @pytest.mark.parametrize("expression", ["", "* * *", "61 * * * *", "not a cron"])
    def test_rejects_malformed(self, expression):
        with pytest.raises(ValueError, match="Invalid cron expression"):
            validate_cron(expression)
