# tests/test_cli.py

import json
import logging
import os

import pytest

from cli import main_cli
from config import SystemConfig
from conftest import BLUE, RED, solid_png


@pytest.fixture
def config_path(tmp_path):
    config = SystemConfig(
        n_workers=2,
        data_dir=str(tmp_path / "data"),
        database_path=str(tmp_path / "data" / "images.db"),
        upload_dir=str(tmp_path / "data" / "uploads"),
        thumbnail_dir=str(tmp_path / "data" / "thumbnails"),
        log_dir=str(tmp_path / "logs"),
    )
    path = tmp_path / "config.yaml"
    config.save(str(path))
    yield str(path)

    root = logging.getLogger()
    for handler in list(root.handlers):
        if getattr(handler, '_gallery_handler', False):
            root.removeHandler(handler)
            handler.close()


@pytest.fixture
def image_dir(tmp_path):
    directory = tmp_path / "photos"
    (directory / "nested").mkdir(parents=True)
    (directory / "red.png").write_bytes(solid_png(RED))
    (directory / "nested" / "blue.png").write_bytes(solid_png(BLUE))
    (directory / "readme.txt").write_text("not an image")
    return directory


def test_ingest_then_query(config_path, image_dir, tmp_path, capsys):
    assert main_cli(["-c", config_path, "ingest", str(image_dir)]) == 0
    assert "Ingested 2 images" in capsys.readouterr().out

    output = tmp_path / "results.json"
    assert main_cli(["-c", config_path, "search", "red", "-o", str(output)]) == 0
    results = json.loads(output.read_text())
    assert [r["filename"] for r in results] == ["red.png"]
    assert results[0]["colors"][0] == "#FF0000"

    assert main_cli(["-c", config_path, "color", "#0000FF", "-l", "1",
                     "-o", str(output)]) == 0
    assert [r["filename"] for r in json.loads(output.read_text())] == ["blue.png"]

    assert main_cli(["-c", config_path, "similar-file", str(image_dir / "red.png"),
                     "-k", "1", "-o", str(output)]) == 0
    assert [r["filename"] for r in json.loads(output.read_text())] == ["red.png"]


def test_errors_exit_nonzero(config_path, capsys):
    assert main_cli(["-c", config_path, "similar", "12345"]) == 1
    assert "not found" in capsys.readouterr().err


def test_no_command_prints_help(capsys):
    assert main_cli([]) == 0
    assert "usage" in capsys.readouterr().out.lower()


def test_ingest_rejects_unreadable_directory(config_path, tmp_path, capsys):
    assert main_cli(["-c", config_path, "ingest", str(tmp_path / "missing")]) == 1
    assert "Cannot read directory" in capsys.readouterr().err


@pytest.mark.skipif(not os.path.isdir("/proc"), reason="needs /proc")
def test_ingest_rejects_system_directory(config_path, capsys):
    assert main_cli(["-c", config_path, "ingest", "/proc"]) == 1
    assert "Cannot read directory" in capsys.readouterr().err
