"""Unit tests for wormhole/report_utils.py"""

import json
import os
import re
import tempfile
from datetime import datetime

from wormhole.error_utils import ErrorCategory, RegistryError
from wormhole.report_utils import add_timestamp_to_path, format_failure_table, save_json, sizeof_fmt
from wormhole.worker_pool import MigrationFailure


class TestSaveJson:
    """Tests for save_json function"""

    def test_save_simple_dict(self):
        """Test saving a simple dictionary"""
        with tempfile.TemporaryDirectory() as tmpdir:
            file_path = os.path.join(tmpdir, "test.json")
            data = {"key1": "value1", "key2": 42}

            saved = save_json(file_path, data)

            assert saved == file_path
            with open(file_path, 'r') as f:
                assert json.load(f) == data

    def test_creates_parent_directories(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            file_path = os.path.join(tmpdir, "nested", "dir", "test.json")
            save_json(file_path, {"a": 1})
            assert os.path.exists(file_path)

    def test_converts_non_json_types(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            file_path = os.path.join(tmpdir, "test.json")
            data = {
                "when": datetime(2026, 1, 15, 14, 30),
                "category": ErrorCategory.CONNECTION,
                "digests": {"sha256:b", "sha256:a"},
                "payload": b"text",
                "blob": b"\xff\xfe",
            }

            save_json(file_path, data)

            with open(file_path, 'r') as f:
                loaded = json.load(f)
            assert loaded["when"] == "2026-01-15T14:30:00"
            assert loaded["category"] == "connection"
            assert loaded["digests"] == ["sha256:a", "sha256:b"]
            assert loaded["payload"] == "text"
            assert loaded["blob"] == "//4="

    def test_timestamped_filename(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            saved = save_json(os.path.join(tmpdir, "report.json"), {}, timestamp=True)
            assert re.search(r"report-\d{4}-\d{2}-\d{2}-\d{2}-\d{2}-\d{2}\.json$", saved)
            assert os.path.exists(saved)


class TestFormatting:
    """Tests for formatting helpers"""

    def test_sizeof_fmt(self):
        assert sizeof_fmt(512) == "512.0B"
        assert sizeof_fmt(1536) == "1.5KiB"
        assert sizeof_fmt(250_000) == "244.1KiB"

    def test_add_timestamp_to_path(self):
        assert add_timestamp_to_path("reports/migration-report.json", "2026-01-15-14-30-00") == (
            os.path.join("reports", "migration-report-2026-01-15-14-30-00.json")
        )

    def test_format_failure_table(self, make_image):
        failures = [
            MigrationFailure(make_image(reference="v1"),
                             RegistryError("Registry refused push\ndetail", category=ErrorCategory.AUTHENTICATION)),
            MigrationFailure(make_image(reference="v2"), ValueError("bad input")),
        ]

        table = format_failure_table(failures)

        assert "| Image" in table
        assert "app:v1" in table
        assert "authentication" in table
        assert "Registry refused push" in table
        assert "detail" not in table
        assert "ValueError" in table
        assert "bad input" in table
