# tests/unit/test_cli.py

import pytest
import numpy as np

from rastercube.db import CatalogIndex
from rastercube.db.cli import main

@pytest.fixture
def raster(raster_factory):
    return raster_factory("scene.tif", np.ones((2, 8, 8)), descriptions=["B04", "B08"])

def test_init_add_and_info(tmp_path, raster, capsys):
    db = str(tmp_path / "cli.db")
    main(["init-db", "--path", db, "--format", "sentinel2_l2a"])
    main(["add-image", "--db", db, "--path", str(raster), "--datetime", "2021-07-01T10:30:00", "--bands", "RED, NIR"])
    main(["info", "--db", db])

    out = capsys.readouterr().out
    assert "Format: sentinel2_l2a" in out
    assert "Images: 1" in out
    assert "Time range: 2021-07-01T10:30:00 - 2021-07-01T10:30:00" in out
    assert "  RED type=float32" in out
    assert "  NIR type=float32" in out

    index = CatalogIndex(db)
    refs = index.query((0.0, 0.0, 8.0, 8.0), ("2021-07-01", "2021-07-02"))
    assert [(r.image, r.band) for r in refs] == [("scene", "RED"), ("scene", "NIR")]
    index.dispose()

def test_catalog_url_from_environment(tmp_path, raster, monkeypatch, capsys):
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("RASTERCUBE_CATALOG_URL", str(tmp_path / "env.db"))
    main(["init-db"])
    main(["add-image", "--path", str(raster), "--datetime", "2021-07-01"])
    main(["info"])
    assert (tmp_path / "env.db").exists()
    out = capsys.readouterr().out
    assert "  B04 " in out

def test_reset_recreates_catalog(tmp_path, raster, capsys):
    db = str(tmp_path / "reset.db")
    main(["init-db", "--path", db])
    main(["add-image", "--db", db, "--path", str(raster), "--datetime", "2021-07-01"])
    main(["init-db", "--path", db, "--reset"])
    main(["info", "--db", db])
    assert "Images: 0" in capsys.readouterr().out

def test_add_image_failures_exit(tmp_path, raster):
    db = str(tmp_path / "fail.db")
    main(["init-db", "--path", db])
    with pytest.raises(SystemExit) as exc:
        main(["add-image", "--db", db, "--path", str(tmp_path / "missing.tif"), "--datetime", "2021-07-01"])
    assert exc.value.code == 1

    main(["add-image", "--db", db, "--path", str(raster), "--datetime", "2021-07-01"])
    with pytest.raises(SystemExit) as exc:
        main(["add-image", "--db", db, "--path", str(raster), "--datetime", "2021-07-02"])
    assert exc.value.code == 1

def test_info_on_missing_catalog_exits(tmp_path):
    with pytest.raises(SystemExit) as exc:
        main(["info", "--db", str(tmp_path / "absent.db")])
    assert exc.value.code == 1

def test_command_is_required():
    with pytest.raises(SystemExit):
        main([])
