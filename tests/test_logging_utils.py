import logging

import orjson

from mint_catalog.logging_utils import JsonFormatter, configure_runtime_logging, warn_once_per


def test_warn_once_per_suppresses_repeats(caplog):
    logger = logging.getLogger("mint_catalog.test.warn_once")
    with caplog.at_level(logging.WARNING, logger=logger.name):
        assert warn_once_per(5, "key-a", "provider %s down", "x", logger=logger)
        assert not warn_once_per(5, "key-a", "provider %s down", "x", logger=logger)
        assert warn_once_per(5, "key-b", "other warning", logger=logger)
        assert warn_once_per(0, "key-c", "always", logger=logger)
        assert warn_once_per(0, "key-c", "always", logger=logger)

    messages = [r.getMessage() for r in caplog.records]
    assert messages.count("provider x down") == 1
    assert messages.count("always") == 2


def test_json_formatter_includes_extra_fields():
    record = logging.LogRecord("mint_catalog.x", logging.WARNING, __file__, 10, "hit %s", ("429",), None)
    record.op = "getAsset"
    payload = orjson.loads(JsonFormatter().format(record))
    assert payload["msg"] == "hit 429"
    assert payload["level"] == "WARNING"
    assert payload["op"] == "getAsset"
    assert payload["ts"].endswith("Z")


def test_configure_runtime_logging_writes_file(tmp_path, monkeypatch):
    monkeypatch.setenv("LOG_CONSOLE", "0")
    root = logging.getLogger()
    before = list(root.handlers)
    level = root.level
    log_file = tmp_path / "logs" / "catalog.log"
    try:
        path = configure_runtime_logging(level="DEBUG", logfile=log_file, json_logs=True)
        logging.getLogger("mint_catalog.test").info("hello %s", "file")
        for handler in root.handlers:
            handler.flush()
        assert path == log_file.resolve()
        lines = log_file.read_text().splitlines()
        assert any(orjson.loads(line).get("msg") == "hello file" for line in lines)
    finally:
        for handler in list(root.handlers):
            if handler not in before:
                root.removeHandler(handler)
                handler.close()
        root.setLevel(level)


def test_configure_runtime_logging_reuses_handlers(tmp_path, monkeypatch):
    monkeypatch.delenv("LOG_JSON", raising=False)
    root = logging.getLogger()
    before = list(root.handlers)
    level = root.level
    log_file = tmp_path / "catalog.log"
    try:
        configure_runtime_logging(level="INFO", console=True, logfile=log_file)
        configure_runtime_logging(level="WARNING", console=True, logfile=log_file)
        added = [h for h in root.handlers if h not in before]
        assert len(added) == 2
        assert all(h.level == logging.WARNING for h in added)
        assert logging.getLogger("websockets").level == logging.WARNING
    finally:
        for handler in list(root.handlers):
            if handler not in before:
                root.removeHandler(handler)
                handler.close()
        root.setLevel(level)
