"""
Tests for the CLI: argument wiring and the offline commands.
Commands that talk to the model server are covered through their helpers.
"""

import json
import os
import sys
from unittest.mock import patch

import pytest

from thinkline import cli
from thinkline.storage import ChatRecord, Message


@pytest.fixture
def config_file(tmp_path):
    path = tmp_path / "config.yaml"
    path.write_text(f"storage:\n  path: {tmp_path / 'chats.db'}\n")
    return path


def run(argv):
    with patch.object(sys, "argv", ["thinkline", *argv]):
        cli.main()


def test_aliases_dispatch_to_same_command(capsys):
    run(["tone"])
    line_name = capsys.readouterr().out
    run(["banner"])
    assert capsys.readouterr().out == line_name
    assert "Think out loud" in line_name


def test_no_command_prints_banner_and_help(capsys):
    run([])
    out = capsys.readouterr().out
    assert "Think out loud" in out
    assert "talk" in out


def test_version(capsys):
    with pytest.raises(SystemExit):
        run(["--version"])
    assert cli.__version__ in capsys.readouterr().out


def test_dump_and_restore(config_file, tmp_path, capsys):
    from thinkline.config import StorageConfig, load_config
    from thinkline.storage import open_store

    store = open_store(StorageConfig.from_config(load_config(config_file)))
    store.add_chat(ChatRecord(id="c1", title="Saved"))
    store.add_message("c1", Message(role="user", content="hi"))

    out = tmp_path / "export.json"
    run(["export", "-c", str(config_file), "-o", str(out), "--pretty"])
    assert json.loads(out.read_text())["chatHistory"][0]["title"] == "Saved"

    run(["wipe", "-c", str(config_file), "--yes"])
    assert store.load_history() == []

    run(["import", "-c", str(config_file), str(out)])
    assert [c.id for c in store.load_history()] == ["c1"]
    assert "Restored" in capsys.readouterr().out


def test_restore_bad_file_exits(config_file, tmp_path):
    bad = tmp_path / "bad.json"
    bad.write_text("not json")
    with pytest.raises(SystemExit):
        run(["restore", "-c", str(config_file), str(bad)])


def test_wipe_aborts_without_confirmation(config_file, capsys):
    with patch("builtins.input", return_value="n"):
        run(["clear", "-c", str(config_file)])
    assert "Aborted" in capsys.readouterr().out


def test_flash_reports_config_and_storage(config_file, capsys):
    run(["info", "-c", str(config_file)])
    out = capsys.readouterr().out
    assert "qwen3:14b" in out
    assert "Chats:     0" in out


def test_progress_bar():
    assert cli._progress_bar(0) == "░" * 20
    assert cli._progress_bar(50) == "█" * 10 + "░" * 10
    assert cli._progress_bar(100) == "█" * 20


def test_line_printer_prints_deltas(capsys):
    printer = cli._LinePrinter(show_thinking=False)
    printer.on_thinking("hidden")
    printer.on_answer("Hel")
    printer.on_answer("Hello")
    assert capsys.readouterr().out == "Hello"


def test_dial_hands_config_to_server_process(config_file, monkeypatch):
    monkeypatch.setenv("THINKLINE_CONFIG", "unset")
    with patch("uvicorn.run") as serve:
        run(["serve", "-c", str(config_file), "--port", "9001"])
    assert serve.call_args.args == ("thinkline.main:app",)
    assert serve.call_args.kwargs["port"] == 9001
    assert os.environ["THINKLINE_CONFIG"] == str(config_file.resolve())


def test_dial_without_config_leaves_env_alone(monkeypatch):
    monkeypatch.setenv("THINKLINE_CONFIG", "/etc/thinkline/config.yaml")
    with patch("uvicorn.run") as serve:
        run(["dial"])
    serve.assert_called_once()
    assert os.environ["THINKLINE_CONFIG"] == "/etc/thinkline/config.yaml"
