from datetime import datetime, timedelta, timezone

import pytest
from pydantic import ValidationError

from sgfbatch.models import BatchConfig, BatchSummary, ConversionResult, WorkItem


class TestBatchConfig:
    def test_default_config_uses_cpu_minus_one(self, monkeypatch):
        monkeypatch.setattr("sgfbatch.models.os.cpu_count", lambda: 5)

        config = BatchConfig()

        assert config.max_workers == 4
        assert config.tool_command == ["./sgfutils.sh"]
        assert config.tool_cwd == "/app"
        assert config.item_timeout is None
        assert config.log_level == "INFO"
        assert config.log_file is None
        assert config.dry_run is False

    def test_aliases_and_normalization(self, tmp_path):
        config = BatchConfig(
            tool="convert.sh",
            thread_count=3,
            tool_cwd=tmp_path / "tools",
            log_file=tmp_path / "batch.log",
            log_level="debug",
        )

        assert config.tool_command == ["convert.sh"]
        assert config.max_workers == 3
        assert config.tool_cwd.endswith("tools")
        assert config.log_file.endswith("batch.log")
        assert config.log_level == "DEBUG"

    def test_rejects_zero_workers(self):
        with pytest.raises(ValidationError):
            BatchConfig(max_workers=0)

    def test_rejects_empty_tool_command(self):
        with pytest.raises(ValidationError):
            BatchConfig(tool_command=[])

    def test_rejects_non_positive_timeout(self):
        with pytest.raises(ValidationError):
            BatchConfig(item_timeout=0)


class TestWorkItem:
    def test_is_immutable(self):
        item = WorkItem(source_path="/data/in/game.sgf", dest_dir="/data/out")

        with pytest.raises(ValidationError):
            item.source_path = "/elsewhere"

    def test_command_appends_source_and_destination(self):
        item = WorkItem(source_path="/data/in/game.sgf", dest_dir="/data/out")

        assert item.name == "game.sgf"
        assert item.command(["python", "tool.py"]) == [
            "python",
            "tool.py",
            "/data/in/game.sgf",
            "/data/out",
        ]


class TestBatchSummary:
    def _result(self, name, status, exit_code=None, error=None):
        return ConversionResult(
            source_path=f"/in/{name}",
            dest_dir="/out",
            status=status,
            exit_code=exit_code,
            error_message=error,
        )

    def test_partial_status_and_counts(self):
        start = datetime(2024, 1, 1, tzinfo=timezone.utc)
        end = start + timedelta(seconds=90)
        results = [
            self._result("a.sgf", "completed", exit_code=0),
            self._result("b.sgf", "completed", exit_code=2),
            self._result("c.sgf", "failed", error="FileNotFoundError: nope"),
        ]

        summary = BatchSummary.from_results(
            results, start, end, avg_cpu=12.5, peak_workers=2
        )

        assert summary.status == "partial"
        assert summary.total_files == 3
        assert summary.completed_files == 2
        assert summary.failed_files == 1
        assert summary.nonzero_exit_files == 1
        assert summary.peak_workers == 2
        assert summary.duration_sec == pytest.approx(90.0)
        assert summary.errors == ["c.sgf: FileNotFoundError: nope"]

    def test_all_failed(self):
        now = datetime.now(timezone.utc)
        results = [self._result("a.sgf", "failed", error="boom")]

        summary = BatchSummary.from_results(results, now, now)

        assert summary.status == "failed"

    def test_nonzero_exit_still_counts_as_success(self):
        now = datetime.now(timezone.utc)
        results = [self._result("a.sgf", "completed", exit_code=1)]

        summary = BatchSummary.from_results(results, now, now)

        assert summary.status == "success"
        assert summary.nonzero_exit_files == 1

    def test_empty_batch(self):
        now = datetime.now(timezone.utc)

        summary = BatchSummary.from_results([], now, now)

        assert summary.status == "empty"
        assert summary.total_files == 0

    def test_status_override(self):
        now = datetime.now(timezone.utc)

        summary = BatchSummary.from_results(
            [], now, now, status_override="dry_run"
        )

        assert summary.status == "dry_run"
