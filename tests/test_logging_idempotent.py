import logging
import os
import sys

from newsmap.utils import configure_logging, log_event


def test_configure_logging_idempotent(tmp_path, monkeypatch):
    log_file = tmp_path / "newsmap.log"
    monkeypatch.setenv("NM_LOG_LEVEL", "INFO")
    monkeypatch.setenv("NM_LOG_FILE", str(log_file))

    root = logging.getLogger()
    original_handlers = list(root.handlers)
    original_level = root.level
    try:
        root.handlers = []
        configure_logging("newsmap.worker")
        configure_logging("newsmap.worker")

        stream_handlers = [
            handler
            for handler in root.handlers
            if isinstance(handler, logging.StreamHandler)
            and not isinstance(handler, logging.FileHandler)
        ]
        file_handlers = [
            handler for handler in root.handlers if isinstance(handler, logging.FileHandler)
        ]

        assert len(stream_handlers) == 1
        assert stream_handlers[0].stream is sys.stdout
        assert len(file_handlers) == 1
        assert os.path.abspath(file_handlers[0].baseFilename) == os.path.abspath(
            str(log_file)
        )
    finally:
        for handler in root.handlers:
            if isinstance(handler, logging.FileHandler):
                handler.close()
        root.handlers = original_handlers
        root.setLevel(original_level)


def test_log_level_overrides(monkeypatch):
    monkeypatch.delenv("NM_LOG_FILE", raising=False)
    monkeypatch.setenv("NM_LOG_LEVELS", "newsmap.notifier=debug, bogus")
    target = logging.getLogger("newsmap.notifier")
    original_level = target.level
    try:
        configure_logging("newsmap.cli")
        assert target.level == logging.DEBUG
    finally:
        target.setLevel(original_level)


def test_log_event_formats_fields(caplog):
    logger = logging.getLogger("newsmap.test")

    with caplog.at_level(logging.INFO, logger="newsmap.test"):
        log_event(logger, logging.INFO, "sitemap_built", count=3, took_ms=12)
        log_event(None, logging.INFO, "ignored")

    assert caplog.messages == ["event=sitemap_built count=3 took_ms=12"]
