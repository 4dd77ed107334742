"""Tests for the command line entry point."""
import pytest

from branchgraph.__main__ import main


def test_command_is_required():
    with pytest.raises(SystemExit):
        main([])


def test_serve_passes_options_to_uvicorn(monkeypatch, tmp_path):
    monkeypatch.setenv("BG_HTTP_PORT", "8787")
    monkeypatch.setenv("BG_HTTP_HOST", "127.0.0.1")
    monkeypatch.setenv("BG_LOG_LEVEL", "INFO")
    monkeypatch.setenv("BG_DATA_PATH", str(tmp_path / "graph.json"))
    calls = []
    monkeypatch.setattr("uvicorn.run", lambda app, **kwargs: calls.append(kwargs))

    main(["serve", "--port", "9001", "--host", "0.0.0.0", "--log-level", "debug"])

    assert calls == [{"host": "0.0.0.0", "port": 9001, "log_level": "debug"}]
