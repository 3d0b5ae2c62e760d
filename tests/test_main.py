import logging
from pathlib import Path

import pytest
import uvicorn

from av1_link import __main__ as main_module


def test_config_path_resolution(monkeypatch: pytest.MonkeyPatch, tmp_path: Path):
    monkeypatch.delenv("AV1LINK_CONFIG", raising=False)
    assert main_module.resolve_config_path() == Path("data/config.json")
    monkeypatch.setenv("AV1LINK_CONFIG", str(tmp_path / "env.json"))
    assert main_module.resolve_config_path() == tmp_path / "env.json"
    assert main_module.resolve_config_path(str(tmp_path / "cli.json")) == tmp_path / "cli.json"


def test_parse_args_defaults():
    args = main_module.parse_args([])
    assert (args.host, args.port, args.debug, args.config) == ("127.0.0.1", 8080, False, None)


def test_configure_logging_keeps_existing_handlers():
    root = logging.getLogger()
    handler = logging.NullHandler()
    root.addHandler(handler)
    try:
        before = list(root.handlers)
        main_module.configure_logging(logging.DEBUG)
        assert root.handlers == before
    finally:
        root.removeHandler(handler)


def test_run_serves_app(monkeypatch: pytest.MonkeyPatch, tmp_path: Path):
    captured = {}

    def fake_create_app(path):
        captured["config"] = path
        return "app"

    def fake_run(app, **kwargs):
        captured["app"] = app
        captured.update(kwargs)

    monkeypatch.setattr(main_module, "create_app", fake_create_app)
    monkeypatch.setattr(uvicorn, "run", fake_run)
    main_module.run(["--config", str(tmp_path / "config.json"), "--port", "9000"])
    assert captured["config"] == tmp_path / "config.json"
    assert captured["app"] == "app"
    assert captured["port"] == 9000
    assert captured["host"] == "127.0.0.1"
