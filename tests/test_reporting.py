from __future__ import annotations

import io
import json
import logging
from pathlib import Path

import allure
import pytest

from bemadralphy.pipeline.models import OutputFormat
from bemadralphy.reporting import LOGGER_NAME, configure_logging, render_json

pytestmark = [
    allure.epic("Pipeline"),
    allure.feature("Logging & Output"),
]


def test_text_logging_uses_prefix_and_level() -> None:
    stream = io.StringIO()
    configure_logging(OutputFormat.TEXT, stream=stream)

    logging.getLogger(f"{LOGGER_NAME}.pipeline").info("Phase %s done", "sync")
    logging.getLogger(f"{LOGGER_NAME}.pipeline").debug("hidden")

    assert stream.getvalue() == "[bemadralphy] [INFO] Phase sync done\n"


def test_reconfiguring_replaces_previous_handler() -> None:
    first = io.StringIO()
    second = io.StringIO()
    configure_logging(OutputFormat.TEXT, stream=first)
    configure_logging(OutputFormat.JSON, stream=second, verbose=True)

    logging.getLogger(LOGGER_NAME).debug(
        "task finished",
        extra={"event": "task.done", "run_id": "run-9", "data": {"task_id": "A"}},
    )

    payload = json.loads(second.getvalue())
    assert first.getvalue() == ""
    assert payload["event"] == "task.done"
    assert payload["level"] == "debug"
    assert payload["run_id"] == "run-9"
    assert payload["data"] == {"task_id": "A"}
    assert payload["message"] == "task finished"


def test_render_json_is_sorted_and_stringifies_unknown_types() -> None:
    rendered = render_json({"b": 1, "a": Path("state") / "tasks.db"})

    assert rendered.index('"a"') < rendered.index('"b"')
    assert json.loads(rendered) == {"a": str(Path("state") / "tasks.db"), "b": 1}
