from __future__ import annotations

import tomllib
from pathlib import Path

from typer.testing import CliRunner

from dirdiff.cli import app
from dirdiff.config import DEFAULT_CONFIG_FILENAME

runner = CliRunner()


def _write_config(directory: Path, body: str) -> Path:
    config_path = directory / DEFAULT_CONFIG_FILENAME
    config_path.write_text(body)
    return config_path


def _project(tmp_path: Path, make_tree, files: dict[str, bytes]) -> tuple[Path, Path, Path]:
    project = tmp_path / "project"
    tree = make_tree(project / "tree", files)
    mirror = tmp_path / "mirror"
    config_path = _write_config(
        project,
        f"""
[settings]
root = "{tree}"

[remotes.mirror]
path = "{mirror}"
""",
    )
    return config_path, tree, mirror


def test_cli_init_writes_loadable_template(tmp_path: Path) -> None:
    config_path = tmp_path / "conf" / DEFAULT_CONFIG_FILENAME

    result = runner.invoke(app, ["init", "--config", str(config_path), "--root", "data"])

    assert result.exit_code == 0
    assert "Created" in result.stdout
    data = tomllib.loads(config_path.read_text())
    assert data["settings"]["root"] == "data"
    assert "remotes" not in data


def test_cli_init_refuses_to_overwrite_without_force(tmp_path: Path) -> None:
    config_path = tmp_path / DEFAULT_CONFIG_FILENAME
    config_path.write_text("# existing\n")

    refused = runner.invoke(app, ["init", "--config", str(config_path)])
    assert refused.exit_code == 1
    assert config_path.read_text() == "# existing\n"

    forced = runner.invoke(app, ["init", "--config", str(config_path), "--force"])
    assert forced.exit_code == 0
    assert "[settings]" in config_path.read_text()


def test_cli_snapshot_log_and_diff(tmp_path: Path, make_tree) -> None:
    config_path, tree, _ = _project(tmp_path, make_tree, {"a.txt": b"alpha"})

    first = runner.invoke(app, ["snapshot", "--config", str(config_path)])
    assert first.exit_code == 0
    assert "Recorded revision 1" in first.stdout

    (tree / "a.txt").rename(tree / "b.txt")
    runner.invoke(app, ["snapshot", "--config", str(config_path)])

    log_result = runner.invoke(app, ["log", "--config", str(config_path)])
    assert log_result.exit_code == 0
    assert "Revision" in log_result.stdout

    diff_result = runner.invoke(app, ["diff", "--config", str(config_path)])
    assert diff_result.exit_code == 0
    assert "renamed" in diff_result.stdout
    assert "from a.txt" in diff_result.stdout

    same = runner.invoke(app, ["diff", "1", "1", "--config", str(config_path)])
    assert same.exit_code == 0
    assert "No differences" in same.stdout


def test_cli_status_reports_unrecorded_changes(tmp_path: Path, make_tree) -> None:
    config_path, tree, _ = _project(tmp_path, make_tree, {"a.txt": b"alpha"})
    runner.invoke(app, ["snapshot", "--config", str(config_path)])

    clean = runner.invoke(app, ["status", "--config", str(config_path)])
    assert "matches the latest revision" in clean.stdout

    (tree / "new.txt").write_text("new")
    dirty = runner.invoke(app, ["status", "--config", str(config_path)])
    assert dirty.exit_code == 0
    assert "added" in dirty.stdout
    assert "dirdiff snapshot" in dirty.stdout


def test_cli_plan_and_sync(tmp_path: Path, make_tree) -> None:
    config_path, _, mirror = _project(tmp_path, make_tree, {"a.txt": b"alpha"})
    runner.invoke(app, ["snapshot", "--config", str(config_path)])

    plan_result = runner.invoke(app, ["plan", "mirror", "--config", str(config_path)])
    assert plan_result.exit_code == 0
    assert "transfer" in plan_result.stdout
    assert not (mirror / "a.txt").exists()

    sync_result = runner.invoke(app, ["sync", "mirror", "--config", str(config_path)])
    assert sync_result.exit_code == 0
    assert "matches revision 1" in sync_result.stdout
    assert (mirror / "a.txt").read_bytes() == b"alpha"

    noop = runner.invoke(app, ["plan", "mirror", "--config", str(config_path)])
    assert "already up to date" in noop.stdout


def test_cli_sync_with_snapshot_flag(tmp_path: Path, make_tree) -> None:
    config_path, _, mirror = _project(tmp_path, make_tree, {"a.txt": b"alpha"})

    result = runner.invoke(app, ["sync", "mirror", "--snapshot", "--config", str(config_path)])

    assert result.exit_code == 0
    assert "Recorded revision 1" in result.stdout
    assert (mirror / "a.txt").exists()


def test_cli_sync_reports_stale_source(tmp_path: Path, make_tree) -> None:
    config_path, tree, _ = _project(tmp_path, make_tree, {"a.txt": b"alpha"})
    runner.invoke(app, ["snapshot", "--config", str(config_path)])
    (tree / "a.txt").write_text("edited")

    result = runner.invoke(app, ["sync", "mirror", "--config", str(config_path)])

    assert result.exit_code == 1
    assert "dirdiff sync --snapshot" in result.stdout
    assert "Remaining operations" in result.stdout


def test_cli_sync_without_revisions(tmp_path: Path, make_tree) -> None:
    config_path, _, _ = _project(tmp_path, make_tree, {"a.txt": b"alpha"})

    result = runner.invoke(app, ["sync", "mirror", "--config", str(config_path)])

    assert result.exit_code == 1
    assert "No revisions recorded" in result.stdout


def test_cli_unknown_remote(tmp_path: Path, make_tree) -> None:
    config_path, _, _ = _project(tmp_path, make_tree, {})
    runner.invoke(app, ["snapshot", "--config", str(config_path)])

    result = runner.invoke(app, ["plan", "elsewhere", "--config", str(config_path)])

    assert result.exit_code == 1
    assert "Unknown remote 'elsewhere'" in result.stdout
    assert "[remotes.<name>]" in result.stdout


def test_cli_abandon_without_log(tmp_path: Path, make_tree) -> None:
    config_path, _, _ = _project(tmp_path, make_tree, {})

    result = runner.invoke(app, ["abandon", "mirror", "--config", str(config_path)])

    assert result.exit_code == 0
    assert "No interrupted sync" in result.stdout


def test_cli_missing_config_hint(tmp_path: Path) -> None:
    result = runner.invoke(app, ["snapshot", "--config", str(tmp_path / "missing.toml")])

    assert result.exit_code == 1
    assert "dirdiff init" in result.stdout


def test_cli_verbose_flag_is_accepted(tmp_path: Path, make_tree) -> None:
    config_path, _, _ = _project(tmp_path, make_tree, {"a.txt": b"alpha"})

    result = runner.invoke(app, ["--verbose", "snapshot", "--config", str(config_path)])

    assert result.exit_code == 0
