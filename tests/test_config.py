import os

import pytest

pytest.importorskip("yaml")

from imagefind_mcp.config import load_config


def test_missing_file_gives_defaults(tmp_path):
    cfg = load_config(str(tmp_path / "absent.yaml"))
    assert cfg.sidecar_suffix == ".xmp"
    assert cfg.thumbnail_size == 200
    assert cfg.thumbnail_quality == 50
    assert (cfg.preview_size, cfg.preview_quality) == (1980, 60)
    assert cfg.prune_missing is True
    assert os.path.isabs(cfg.db_path)
    assert os.path.isabs(cfg.scan_dir)


def test_yaml_values_are_loaded_and_normalized(tmp_path):
    photos = tmp_path / "photos"
    photos.mkdir()
    path = tmp_path / "imagefind.yaml"
    path.write_text(
        "\n".join(
            [
                f"scan_dir: {photos}",
                f"db_path: {tmp_path / 'db' / 'index.sqlite'}",
                "log_level: debug",
                "index_workers: 500",
                "thumbnail_quality: 70",
            ]
        ),
        encoding="utf-8",
    )
    cfg = load_config(str(path))
    assert cfg.scan_dir == os.path.realpath(str(photos))
    assert cfg.log_level == "DEBUG"
    assert cfg.index_workers == 64
    assert cfg.thumbnail_quality == 70


def test_env_var_selects_config(tmp_path, monkeypatch):
    path = tmp_path / "env.yaml"
    path.write_text("preview_size: 1024\n", encoding="utf-8")
    monkeypatch.setenv("IMAGEFIND_CONFIG_PATH", str(path))
    assert load_config().preview_size == 1024


@pytest.mark.parametrize(
    "body",
    [
        "unknown_key: 1\n",
        "log_level: LOUD\n",
        "thumbnail_quality: 100\n",
        "sidecar_suffix: xmp\n",
        "index_workers: 0\n",
        "- just\n- a list\n",
    ],
)
def test_invalid_config_raises(tmp_path, body):
    path = tmp_path / "bad.yaml"
    path.write_text(body, encoding="utf-8")
    with pytest.raises(ValueError):
        load_config(str(path))
