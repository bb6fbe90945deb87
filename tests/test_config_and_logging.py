"""Tests for environment validation, config coercion and structured logging"""

import json
import logging

import pytest

from config.base import _coerce_bool, _coerce_int
from config.validation import validate_and_exit, validate_environment
from crm_app.utils.logging_config import JSONFormatter, TextFormatter, setup_logging


@pytest.fixture
def production_env(monkeypatch, tmp_path):
    mapping = tmp_path / "aliases.yaml"
    mapping.write_text("org_code: [codigo_rbd]\n", encoding="utf-8")
    monkeypatch.setenv("SECRET_KEY", "a" * 64)
    monkeypatch.setenv("REMOTE_STORE_URL", "https://cms.example.org")
    monkeypatch.setenv("REMOTE_STORE_TOKEN", "token")
    monkeypatch.setenv("IMPORTER_ALIAS_MAPPING_PATH", str(mapping))
    monkeypatch.setenv("IMPORTER_CONCURRENCY", "6")
    return monkeypatch


class TestEnvironmentValidation:
    """Test startup validation of required environment variables"""

    def test_non_production_environments_skip_validation(self, monkeypatch):
        """Test development and testing never fail validation"""
        monkeypatch.delenv("REMOTE_STORE_URL", raising=False)
        assert validate_environment("development") == (True, [])
        assert validate_environment("testing") == (True, [])

    def test_production_with_complete_environment(self, production_env):
        """Test a fully configured production environment passes"""
        assert validate_environment("production") == (True, [])

    def test_production_reports_every_problem(self, production_env):
        """Test each missing or invalid variable is listed"""
        production_env.setenv("SECRET_KEY", "your-secret-key")
        production_env.setenv("REMOTE_STORE_URL", "cms.example.org")
        production_env.delenv("REMOTE_STORE_TOKEN")
        production_env.setenv("IMPORTER_ALIAS_MAPPING_PATH", "/nonexistent/aliases.yaml")
        production_env.setenv("IMPORTER_CONCURRENCY", "many")

        is_valid, errors = validate_environment("production")

        assert is_valid is False
        assert len(errors) == 5
        assert any("SECRET_KEY" in error for error in errors)
        assert any("http:// or https://" in error for error in errors)
        assert any("REMOTE_STORE_TOKEN" in error for error in errors)
        assert any("missing file" in error for error in errors)
        assert any("IMPORTER_CONCURRENCY" in error for error in errors)

    def test_validate_and_exit_exits_on_failure(self, production_env, capsys):
        """Test the startup guard prints the problems and exits"""
        production_env.delenv("REMOTE_STORE_URL")

        with pytest.raises(SystemExit) as excinfo:
            validate_and_exit("production")

        assert excinfo.value.code == 1
        assert "REMOTE_STORE_URL is required" in capsys.readouterr().err


class TestConfigCoercion:
    """Test environment value coercion helpers"""

    @pytest.mark.parametrize(
        "value, expected",
        [("true", True), ("YES", True), ("1", True), ("off", False), ("0", False), ("maybe", None), (None, None)],
    )
    def test_coerce_bool(self, value, expected):
        """Test truthy and falsey strings, falling back to the default"""
        assert _coerce_bool(value, default=None) is expected

    @pytest.mark.parametrize(
        "value, expected",
        [(None, 8), ("", 8), ("abc", 8), ("12", 12), ("0", 1), ("64", 32)],
    )
    def test_coerce_int_clamps(self, value, expected):
        """Test integer parsing with bounds"""
        assert _coerce_int(value, 8, minimum=1, maximum=32) == expected

    def test_testing_config_is_selected(self, app):
        """Test the test suite runs against TestingConfig"""
        assert app.config["TESTING"] is True
        assert app.config["IMPORTER_CONCURRENCY"] == 4
        assert app.config["REMOTE_STORE_URL"] == "http://remote-store.test"


class TestStructuredLogging:
    """Test formatters and handler wiring"""

    def _record(self, **extra):
        record = logging.LogRecord("crm_app.importer", logging.INFO, __file__, 10, "Import finished", (), None)
        for key, value in extra.items():
            setattr(record, key, value)
        return record

    def test_json_formatter_includes_importer_fields(self):
        """Test importer_* extras are emitted as JSON keys"""
        record = self._record(importer_rows_total=3, unrelated="skip")

        payload = json.loads(JSONFormatter().format(record))

        assert payload["message"] == "Import finished"
        assert payload["level"] == "INFO"
        assert payload["importer_rows_total"] == 3
        assert "unrelated" not in payload

    def test_text_formatter_appends_sorted_fields(self):
        """Test importer_* extras are appended as key=value pairs"""
        record = self._record(importer_mode="courses", importer_errors=0)

        line = TextFormatter().format(record)

        assert line.endswith("| importer_errors=0 importer_mode=courses")

    def test_setup_logging_writes_rotating_file(self, app, tmp_path):
        """Test file logging lands in LOG_DIR/importer.log"""
        log_dir = tmp_path / "logs"
        app.config.update(
            LOG_DIR=str(log_dir),
            LOG_LEVEL="INFO",
            LOG_FORMAT="json",
            ENABLE_FILE_LOGGING=True,
            ENABLE_CONSOLE_LOGGING=False,
        )

        setup_logging(app)
        try:
            logging.getLogger("crm_app.importer.tests").info("hello", extra={"importer_rows_total": 1})
            for handler in logging.getLogger("crm_app").handlers:
                handler.flush()

            lines = (log_dir / "importer.log").read_text(encoding="utf-8").splitlines()
            assert json.loads(lines[-1])["importer_rows_total"] == 1
        finally:
            app.config.update(ENABLE_FILE_LOGGING=False)
            setup_logging(app)
