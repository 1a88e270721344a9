import io
import json
import logging

import pytest

from redis_facade import FacadeConfig
from redis_facade.common.config import LoggingConfig
from redis_facade.utils.logger import setup_logging, setup_logging_from_config


@pytest.fixture
def restore_root_logger():
    root = logging.getLogger()
    handlers, level = root.handlers[:], root.level
    yield
    root.handlers[:] = handlers
    root.setLevel(level)


def test_json_output(restore_root_logger):
    stream = io.StringIO()
    setup_logging(level="debug", node_id="node-7", stream=stream)

    logging.getLogger("redis_facade.test").info("lock taken", extra={"key": "redisLock:a"})

    entry = json.loads(stream.getvalue().strip())
    assert entry["message"] == "lock taken"
    assert entry["level"] == "INFO"
    assert entry["logger"] == "redis_facade.test"
    assert entry["node_id"] == "node-7"
    assert entry["key"] == "redisLock:a"
    assert "topic" not in entry


def test_json_output_with_exception(restore_root_logger):
    stream = io.StringIO()
    setup_logging(stream=stream)

    try:
        raise RuntimeError("listener bug")
    except RuntimeError:
        logging.getLogger("redis_facade.test").exception("listener failed", extra={"topic": "events"})

    entry = json.loads(stream.getvalue().strip())
    assert entry["topic"] == "events"
    assert "RuntimeError: listener bug" in entry["exception"]


def test_text_output_from_config(restore_root_logger):
    stream = io.StringIO()
    config = FacadeConfig(logging=LoggingConfig(level="WARNING", format="text"))
    setup_logging_from_config(config, stream=stream)

    log = logging.getLogger("redis_facade.test")
    log.info("hidden")
    log.warning("shown")

    output = stream.getvalue()
    assert "hidden" not in output
    assert "[WARNING] redis_facade.test: shown" in output
    assert logging.getLogger("redis").level == logging.WARNING
