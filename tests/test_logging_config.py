"""Tests for service logging setup."""

import logging
from logging.handlers import RotatingFileHandler

import pytest

from shared.utils.logging_config import setup_logging


@pytest.fixture
def restore_root_logger():
    root = logging.getLogger()
    saved_handlers, saved_level = root.handlers[:], root.level
    yield root
    for handler in root.handlers[:]:
        if handler not in saved_handlers:
            root.removeHandler(handler)
            handler.close()
    for handler in saved_handlers:
        if handler not in root.handlers:
            root.addHandler(handler)
    root.setLevel(saved_level)
    for name in ("trimesh", "redis", "uvicorn.access"):
        logging.getLogger(name).setLevel(logging.NOTSET)


class TestSetupLogging:
    def test_writes_rotating_service_log(self, tmp_path, restore_root_logger):
        log_file = setup_logging(server_name="fusion", log_dir=tmp_path / "logs")

        assert log_file == tmp_path / "logs" / "fusion.log"
        root = restore_root_logger
        assert root.level == logging.INFO
        files = [h for h in root.handlers if isinstance(h, RotatingFileHandler)]
        assert len(files) == 1
        assert files[0].baseFilename == str(log_file)

        logging.getLogger("src.fusion.pipeline").info("integrated scan")
        files[0].flush()
        assert "integrated scan" in log_file.read_text()

    def test_debug_level(self, tmp_path, restore_root_logger):
        setup_logging(server_name="fusion", log_dir=tmp_path, debug=True)
        assert restore_root_logger.level == logging.DEBUG
        assert logging.getLogger("trimesh").level == logging.DEBUG

    def test_third_party_loggers_quiet_by_default(self, tmp_path, restore_root_logger):
        setup_logging(server_name="fusion", log_dir=tmp_path)
        assert logging.getLogger("redis").level == logging.WARNING
        assert logging.getLogger("uvicorn.access").level == logging.WARNING
