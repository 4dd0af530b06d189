"""Tests for the dated log handler and settings-driven logging setup."""
import logging
from datetime import date, timedelta

import pytest

from bubble_translate.config import Settings
from bubble_translate.logging_config import DailyRotatingFileHandler, setup_logging


def test_old_files_pruned_on_open(tmp_path):
    old = (date.today() - timedelta(days=40)).isoformat()
    recent = (date.today() - timedelta(days=2)).isoformat()
    (tmp_path / f"detector_{old}.log").write_text("old")
    (tmp_path / f"detector_{old}_01.log").write_text("old")
    (tmp_path / f"detector_{recent}.log").write_text("recent")
    (tmp_path / f"error_{old}.log").write_text("other handler")
    (tmp_path / "detector_notes.log").write_text("kept")

    handler = DailyRotatingFileHandler(str(tmp_path), base_name="detector", backup_days=30)
    handler.close()

    names = {p.name for p in tmp_path.iterdir()}
    assert f"detector_{old}.log" not in names
    assert f"detector_{old}_01.log" not in names
    assert f"detector_{recent}.log" in names
    assert f"error_{old}.log" in names
    assert "detector_notes.log" in names
    assert f"detector_{date.today().isoformat()}.log" in names


def test_size_rollover_names(tmp_path):
    handler = DailyRotatingFileHandler(str(tmp_path), base_name="error", max_bytes=200, backup_count=3)
    handler.setFormatter(logging.Formatter("%(message)s"))
    logger = logging.getLogger("tests.rotation")
    logger.propagate = False
    logger.addHandler(handler)
    try:
        for i in range(20):
            logger.error("x" * 50 + str(i))
    finally:
        logger.removeHandler(handler)
        handler.close()

    today = date.today().isoformat()
    names = {p.name for p in tmp_path.iterdir()}
    assert f"error_{today}.log" in names
    assert f"error_{today}_01.log" in names
    assert len(names) <= 4


@pytest.fixture
def restore_root_logger():
    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    yield root
    for handler in list(root.handlers):
        root.removeHandler(handler)
        handler.close()
    for handler in handlers:
        root.addHandler(handler)
    root.setLevel(level)


def test_setup_logging_follows_settings(tmp_path, restore_root_logger):
    config = Settings(
        _env_file=None,
        LOG_DIR=str(tmp_path / "logs"),
        LOG_LEVEL="debug",
        LOG_TO_CONSOLE=False,
        LOG_MAX_BYTES=4096,
        LOG_BACKUP_DAYS=3,
        LOG_QUIET_LOGGERS="tests.noisy",
    )

    setup_logging(config)
    setup_logging(config)

    handlers = restore_root_logger.handlers
    assert restore_root_logger.level == logging.DEBUG
    assert [h.base_name for h in handlers] == ["detector", "error"]
    assert all(h.maxBytes == 4096 and h.backup_days == 3 for h in handlers)
    assert handlers[1].level == logging.ERROR
    assert logging.getLogger("tests.noisy").level == logging.WARNING
    assert (tmp_path / "logs" / f"detector_{date.today().isoformat()}.log").exists()
