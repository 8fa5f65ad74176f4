import io
import json
import logging

from utils.logger import JsonFormatter, TextFormatter, setup_logging


def _record(**extra):
    record = logging.makeLogRecord({
        "name": "sync.lock",
        "levelno": logging.INFO,
        "levelname": "INFO",
        "msg": "Lock %s acquired",
        "args": ("resource_a",),
    })
    record.__dict__.update(extra)
    return record


def test_json_lifts_coordination_ids():
    line = JsonFormatter(node_id="node-1").format(_record(
        lock_id="resource_a", holder="h1", data={"lease_ms": 5000},
    ))
    entry = json.loads(line)
    assert entry["message"] == "Lock resource_a acquired"
    assert entry["node_id"] == "node-1"
    assert entry["lock_id"] == "resource_a"
    assert entry["holder"] == "h1"
    assert entry["data"] == {"lease_ms": 5000}
    assert "job_id" not in entry


def test_json_reads_ids_from_data():
    entry = json.loads(JsonFormatter().format(_record(data={"job_id": "j1", "queue": "game-tasks"})))
    assert entry["job_id"] == "j1"
    assert entry["queue"] == "game-tasks"


def test_text_appends_ids():
    line = TextFormatter().format(_record(board_id="board-1", participant_id="u1"))
    assert line.endswith("sync.lock: Lock resource_a acquired board_id=board-1 participant_id=u1")


def test_setup_logging_emits_json():
    stream = io.StringIO()
    setup_logging("INFO", "json", node_id="node-2", stream=stream)
    try:
        logging.getLogger("mq.queue").info("Job j1 completed", extra={"job_id": "j1", "queue": "q"})
        entry = json.loads(stream.getvalue().splitlines()[-1])
        assert entry["logger"] == "mq.queue"
        assert entry["job_id"] == "j1"
        assert entry["node_id"] == "node-2"
    finally:
        for handler in logging.getLogger().handlers[:]:
            logging.getLogger().removeHandler(handler)
