"""
Brief: Tests for the dohrelay.main CLI entry.

Inputs:
  - None

Outputs:
  - None
"""

import json
import logging
import signal

import pytest

import dohrelay.main as main_mod
from dohrelay.main import main


@pytest.fixture(autouse=True)
def keep_signal_handlers():
    """
    Brief: Restore signal handlers and root logging touched by main().

    Inputs:
      - None

    Outputs:
      - None
    """
    saved = {
        name: signal.getsignal(getattr(signal, name))
        for name in ("SIGHUP", "SIGTERM", "SIGINT")
        if hasattr(signal, name)
    }
    root = logging.getLogger()
    handlers = list(root.handlers)
    level = root.level
    yield
    for name, handler in saved.items():
        signal.signal(getattr(signal, name), handler)
    for h in list(root.handlers):
        if h not in handlers:
            root.removeHandler(h)
    root.setLevel(level)
    logging.captureWarnings(False)


def test_print_schema(capsys) -> None:
    """
    Brief: --print-schema writes the JSON Schema and exits 0.

    Inputs:
      - argv: ['--print-schema']

    Outputs:
      - None: Asserts exit code and JSON output
    """
    assert main(["--print-schema"]) == 0
    schema = json.loads(capsys.readouterr().out)
    assert schema["type"] == "object"


def test_missing_config_file_returns_1(tmp_path, capsys) -> None:
    """
    Brief: An unreadable config path is a startup failure.

    Inputs:
      - argv: --config pointing at a missing file

    Outputs:
      - None: Asserts exit code 1 and message
    """
    missing = tmp_path / "nope.yaml"
    assert main(["--config", str(missing)]) == 1
    assert "nope.yaml" in capsys.readouterr().out


def test_invalid_config_returns_1(tmp_path) -> None:
    """
    Brief: A schema violation is reported and exits 1.

    Inputs:
      - config with a string port

    Outputs:
      - None: Asserts exit code
    """
    cfg = tmp_path / "bad.yaml"
    cfg.write_text("server:\n  port: high\n", encoding="utf-8")
    assert main(["--config", str(cfg)]) == 1


def test_unknown_backend_returns_1(tmp_path) -> None:
    """
    Brief: An unknown storage backend alias aborts startup.

    Inputs:
      - storage.backend: 'nosuch'

    Outputs:
      - None: Asserts exit code
    """
    cfg = tmp_path / "cfg.yaml"
    cfg.write_text("storage:\n  backend: nosuch\nlogging:\n  stderr: false\n", encoding="utf-8")
    assert main(["--config", str(cfg)]) == 1


def test_clean_shutdown_on_sighup(tmp_path, monkeypatch) -> None:
    """
    Brief: main() serves until a signal arrives, then stops the webserver and services.

    Inputs:
      - start_webserver replaced with a handle that raises SIGHUP on first poll

    Outputs:
      - None: Asserts exit code 0 and stop() called
    """
    cfg = tmp_path / "cfg.yaml"
    cfg.write_text("storage:\n  backend: memory\nlogging:\n  stderr: false\n", encoding="utf-8")
    events = []

    class _Handle:
        def is_running(self):
            if not events:
                events.append("polled")
                signal.raise_signal(signal.SIGHUP)
            return True

        def stop(self):
            events.append("stopped")

    monkeypatch.setattr(main_mod, "start_webserver", lambda services: _Handle())
    assert main(["--config", str(cfg)]) == 0
    assert events == ["polled", "stopped"]
