import json

import pytest

from shadow_backup import main

from tests.fixtures import write_tree


def test_help_exits_zero(capsys):
    with pytest.raises(SystemExit) as excinfo:
        main(["-h"])
    assert excinfo.value.code == 0
    assert "--source-top-dir" in capsys.readouterr().out


def test_no_arguments_prints_help(capsys):
    assert main([]) == 1
    assert "usage" in capsys.readouterr().out.lower()


def test_missing_target_is_a_usage_error(tmp_path, capsys):
    source = write_tree(tmp_path / "home", {"a.txt": "alpha"})

    with pytest.raises(SystemExit) as excinfo:
        main(["-s", str(source)])

    assert excinfo.value.code == 2
    assert "Target directory not specified" in capsys.readouterr().err
    assert not (tmp_path / "backup").exists()


def test_unknown_option_is_a_usage_error():
    with pytest.raises(SystemExit) as excinfo:
        main(["--frobnicate"])
    assert excinfo.value.code == 2


def test_full_run(tmp_path):
    source = write_tree(tmp_path / "home", {"a.txt": "alpha", "b/c.txt": "charlie"})
    backup = tmp_path / "backup"

    code = main(["-s", f"{source}/", "-b", str(backup), "--engine", "python", "--no-color"])

    assert code == 0
    assert (backup / "home" / "b" / "c.txt").read_text(encoding="utf-8") == "charlie"
    assert list((backup / "__LOGS").glob("log-rtm-*.log"))


def test_config_file_supplies_defaults(tmp_path):
    source = write_tree(tmp_path / "home", {"a.txt": "alpha"})
    backup = tmp_path / "backup"
    config = tmp_path / "backup.json"
    config.write_text(json.dumps({"source": str(source), "backup": str(backup), "engine": "python"}), encoding="utf-8")

    assert main(["--config", str(config), "--dry-run", "--no-color"]) == 0
    assert not (backup / "home").exists()
    assert list((backup / "__LOGS").glob("*--dry-run.log"))


def test_unreadable_config_file_is_a_usage_error(tmp_path):
    with pytest.raises(SystemExit) as excinfo:
        main(["--config", str(tmp_path / "missing.json")])
    assert excinfo.value.code == 2
