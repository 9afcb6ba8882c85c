import logging
import os
import sys

from setlistsync.utils import configure_logging, log_event


def test_configure_logging_idempotent(tmp_path, monkeypatch):
    log_file = tmp_path / "sync.log"
    monkeypatch.setenv("SS_LOG_LEVEL", "INFO")
    monkeypatch.setenv("SS_LOG_FILE", str(log_file))

    root = logging.getLogger()
    original_handlers = list(root.handlers)
    original_level = root.level
    try:
        root.handlers = []
        configure_logging("setlistsync.worker")
        configure_logging("setlistsync.worker")

        stdout_handlers = [
            handler
            for handler in root.handlers
            if isinstance(handler, logging.StreamHandler)
            and not isinstance(handler, logging.FileHandler)
            and handler.stream is sys.stdout
        ]
        file_handlers = [
            handler for handler in root.handlers if isinstance(handler, logging.FileHandler)
        ]

        assert len(stdout_handlers) == 1
        assert len(file_handlers) == 1
        assert os.path.abspath(file_handlers[0].baseFilename) == os.path.abspath(str(log_file))
    finally:
        for handler in root.handlers:
            if handler not in original_handlers:
                handler.close()
        root.handlers = original_handlers
        root.setLevel(original_level)


def test_per_logger_overrides(monkeypatch):
    monkeypatch.setenv("SS_LOG_LEVELS", "setlistsync.scheduler=DEBUG,setlistsync.clients=ERROR")
    monkeypatch.delenv("SS_LOG_FILE", raising=False)
    configure_logging("setlistsync.test")
    try:
        assert logging.getLogger("setlistsync.scheduler").level == logging.DEBUG
        assert logging.getLogger("setlistsync.clients").level == logging.ERROR
    finally:
        logging.getLogger("setlistsync.scheduler").setLevel(logging.NOTSET)
        logging.getLogger("setlistsync.clients").setLevel(logging.NOTSET)


def test_log_event_formats_key_values(caplog):
    logger = logging.getLogger("setlistsync.test")
    with caplog.at_level(logging.WARNING, logger="setlistsync.test"):
        log_event(logger, logging.WARNING, "job_retry", job_id="sync_1", attempt=2)
    assert caplog.records[-1].getMessage() == "event=job_retry job_id=sync_1 attempt=2"
