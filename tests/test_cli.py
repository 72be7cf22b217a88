import pytest

from opro.cli import build_parser, main
from opro.store import DiskSessionStore


@pytest.fixture
def base_args(tmp_path):
    return ["--config", str(tmp_path / "absent.yaml"), "--store-dir", str(tmp_path / "store")]


def stored(tmp_path):
    with DiskSessionStore(str(tmp_path / "store")) as store:
        return store.list_all()


def test_parser_defaults_follow_config():
    args = build_parser().parse_args(["new", "demo"])
    assert args.k == 4
    assert args.top_x == 20
    assert args.scorer_temperature == 0.0


def test_new_list_delete(tmp_path, base_args, capsys):
    main(base_args + ["new", "demo", "--k", "2", "--top-x", "5"])
    (session,) = stored(tmp_path)
    assert session.name == "demo"
    assert session.config.k == 2
    assert session.id in capsys.readouterr().out

    main(base_args + ["list"])
    assert "Sessions" in capsys.readouterr().out

    main(base_args + ["delete", session.id])
    assert stored(tmp_path) == []


def test_unknown_session_exits_nonzero(base_args):
    with pytest.raises(SystemExit) as info:
        main(base_args + ["show", "missing"])
    assert info.value.code == 1


def test_invalid_config_exits_nonzero(base_args):
    with pytest.raises(SystemExit) as info:
        main(base_args + ["new", "demo", "--k", "0"])
    assert info.value.code == 1


def test_non_numeric_seed_exits_nonzero(base_args, monkeypatch):
    monkeypatch.setenv("OPRO_SEED", "not-a-number")
    with pytest.raises(SystemExit) as info:
        main(base_args + ["list"])
    assert info.value.code == 1
