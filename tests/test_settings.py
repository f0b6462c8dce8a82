import logging

from feedloom.utils.logging import configure_logging, update_prefix
from feedloom.utils.settings import RuntimeSettings


# ---------------------------------------------------------------------------
# Runtime settings
# ---------------------------------------------------------------------------


class TestRuntimeSettings:
    def test_defaults(self, monkeypatch):
        monkeypatch.delenv("FEEDLOOM_FETCH_CONCURRENCY", raising=False)
        settings = RuntimeSettings()
        assert settings.fetch_concurrency == 5
        assert settings.gc_seconds == 6 * 3600

    def test_environment_is_read_per_instance(self, monkeypatch):
        # Values set after import (as load_dotenv does in main) still apply
        monkeypatch.setenv("FEEDLOOM_FETCH_CONCURRENCY", "9")
        monkeypatch.setenv("FEEDLOOM_DATA_DIR", "/tmp/fl-data")
        settings = RuntimeSettings()
        assert settings.fetch_concurrency == 9
        assert settings.data_dir == "/tmp/fl-data"

    def test_bad_values_fall_back(self, monkeypatch):
        monkeypatch.setenv("FEEDLOOM_TICK_SECONDS", "soon")
        assert RuntimeSettings().tick_seconds == 10.0

    def test_explicit_arguments_win(self, monkeypatch):
        monkeypatch.setenv("FEEDLOOM_FETCH_RETRIES", "7")
        assert RuntimeSettings(fetch_retries=1).fetch_retries == 1


# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------


class TestLogging:
    def test_file_output_creates_the_directory(self, tmp_path):
        root = logging.getLogger()
        saved = list(root.handlers), root.level
        try:
            path = tmp_path / "logs" / "fl.log"
            configure_logging(level="DEBUG", output="both", file_path=str(path), log_format="json")
            assert path.parent.is_dir()
            assert len(root.handlers) == 2
            assert root.level == logging.DEBUG
            assert logging.getLogger("urllib3").level == logging.INFO
        finally:
            for handler in root.handlers:
                handler.close()
            root.handlers[:] = saved[0]
            root.setLevel(saved[1])

    def test_update_prefix(self):
        assert update_prefix() == "[update]"
        assert update_prefix(is_manual=True) == "[manual]"
        assert update_prefix(is_manual=True, force_reprocess=True) == "[reprocess]"
