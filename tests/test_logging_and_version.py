from __future__ import annotations

import logging
import sys
from types import SimpleNamespace

import pytest

import load
import version
from inlay_plugin import logging_utils


def test_logger_uses_plugin_name():
    logger = logging.getLogger(load.PLUGIN_NAME)
    assert logger.name == load.PLUGIN_NAME
    assert any(isinstance(handler, load._EDMCLogHandler) for handler in logger.handlers)
    assert load.plugin_name == load.PLUGIN_NAME
    assert load.version == version.__version__


@pytest.mark.parametrize(
    "identifier, expected",
    [
        ("0.3.0-dev", True),
        ("0.3.0.dev2", True),
        ("0.3.0", False),
        ("1.0.0-devonly", False),
    ],
)
def test_is_dev_build_reads_version_marker(monkeypatch, identifier, expected):
    monkeypatch.delenv(version.DEV_MODE_ENV_VAR, raising=False)
    assert version.is_dev_build(identifier) is expected


def test_dev_mode_env_var_overrides_version(monkeypatch):
    monkeypatch.setenv(version.DEV_MODE_ENV_VAR, "0")
    assert version.is_dev_build("0.3.0-dev") is False

    monkeypatch.setenv(version.DEV_MODE_ENV_VAR, "yes")
    assert version.is_dev_build("1.0.0") is True


def test_user_agent_names_product():
    assert version.user_agent() == f"{version.PRODUCT_NAME}/{version.__version__}"


def test_edmc_log_level_comes_from_config(monkeypatch):
    dummy = SimpleNamespace(config=SimpleNamespace(get_str=lambda key: "WARNING"), logger=None)
    monkeypatch.setitem(sys.modules, "config", dummy)

    assert load._resolve_edmc_log_level() == logging.WARNING


def test_log_handler_forwards_to_edmc_logger(monkeypatch):
    records: list[tuple[int, str]] = []

    class _EDMCLogger(logging.Logger):
        def log(self, level, msg, *args, **kwargs):
            records.append((level, msg))

    edmc_logger = _EDMCLogger("edmc-test")
    edmc_logger.setLevel(logging.DEBUG)
    dummy = SimpleNamespace(config=SimpleNamespace(get_str=lambda key: "DEBUG"), logger=edmc_logger)
    monkeypatch.setitem(sys.modules, "config", dummy)

    handler = load._EDMCLogHandler()
    handler.emit(logging.LogRecord("EDMCWebOverlay", logging.INFO, __file__, 1, "hello", None, None))

    assert records == [(logging.INFO, "hello")]


def test_rotating_handler_respects_retention(tmp_path):
    handler = logging_utils.build_rotating_handler(tmp_path / "logs", retention=3)
    try:
        assert handler.backupCount == 2
        assert handler.baseFilename.endswith(logging_utils.RENDERER_LOG_FILE_NAME)
    finally:
        logging_utils.detach_handlers(logging.getLogger("test.rotating"), [handler])


def test_resolve_logs_dir_prefers_edmc_logs_folder(tmp_path):
    plugin_dir = tmp_path / "EDMarketConnector" / "plugins" / "EDMCWebOverlay"
    plugin_dir.mkdir(parents=True)

    target = logging_utils.resolve_logs_dir(plugin_dir, "EDMCWebOverlay")

    assert target == (tmp_path / "EDMarketConnector" / "logs" / "EDMCWebOverlay").resolve()
    assert target.is_dir()
