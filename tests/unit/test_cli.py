"""
Unit tests for the sitesnap CLI.
"""

from pathlib import Path

import pytest

from sitesnap.cli import confirm, main, prompt_until_valid
from sitesnap.core.exceptions import ValidationError
from sitesnap.snapshot.cache import LocalCache
from sitesnap.validation import validate_slug


@pytest.fixture
def config_file(tmp_path, monkeypatch) -> Path:
    path = tmp_path / "home" / "config.yaml"
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(
        "repositories:\n"
        "  - name: team\n"
        "    type: directory\n"
        f"    path: {tmp_path / 'repository'}\n"
        f"cache_dir: {tmp_path / 'cache'}\n"
        "retry:\n"
        "  max_attempts: 1\n",
        encoding="utf-8",
    )
    monkeypatch.setenv("SITESNAP_CONFIG", str(path))
    return path


def push_site(site_tree: Path, *extra: str) -> int:
    return main([
        "push",
        "--path", str(site_tree),
        "--project", "myblog",
        "--description", "From the CLI",
        "--yes",
        *extra,
    ])


class TestCommands:
    """Tests for CLI commands end to end."""

    def test_push_unknown_id_exits_1_without_touching_repository(self, config_file, tmp_path):
        assert main(["push", "0123456789abcdef"]) == 1
        assert not (tmp_path / "repository").exists()

    def test_push_new_snapshot(self, config_file, site_tree, tmp_path, capsys):
        assert push_site(site_tree, "--exclude", "./cache") == 0

        out = capsys.readouterr().out
        assert "Push Report (pushed)" in out
        assert len(list((tmp_path / "repository" / "snapshots").glob("*.json"))) == 1

    def test_invalid_project_exits_1(self, config_file, site_tree, tmp_path):
        code = main(["push", "--path", str(site_tree), "--project", "my blog!", "--description", "x"])

        assert code == 1
        assert not (tmp_path / "cache" / "snapshots").exists() or not any(
            (tmp_path / "cache" / "snapshots").iterdir()
        )

    def test_list_and_search(self, config_file, site_tree, capsys):
        assert push_site(site_tree) == 0
        capsys.readouterr()

        assert main(["list"]) == 0
        listed = capsys.readouterr().out
        assert "myblog" in listed
        assert "pushed" in listed

        assert main(["search", "myblog"]) == 0
        assert "From the CLI" in capsys.readouterr().out

    def test_create_then_push_by_id(self, config_file, site_tree, capsys):
        assert main([
            "create", "--path", str(site_tree), "--project", "myblog", "--description", "Local only",
        ]) == 0
        snapshot_id = capsys.readouterr().out.strip()

        assert main(["push", snapshot_id]) == 0
        assert main(["push", snapshot_id]) == 0
        assert "nothing uploaded" in capsys.readouterr().out

    def test_repeated_exclude_applies_every_pattern(self, config_file, site_tree, tmp_path, capsys):
        assert main([
            "create", "--path", str(site_tree), "--project", "myblog", "--description", "x",
            "--exclude", "cache", "--exclude", "uploads",
        ]) == 0
        snapshot_id = capsys.readouterr().out.strip()

        paths = LocalCache(tmp_path / "cache").load_manifest(snapshot_id).paths()
        assert "index.php" in paths
        assert not any(p.startswith("cache/") for p in paths)
        assert not any(p.startswith("uploads/") for p in paths)

    def test_push_by_id_goes_to_snapshot_repository(self, config_file, site_tree, tmp_path, capsys):
        config_file.write_text(
            "repositories:\n"
            "  - name: team\n"
            "    type: directory\n"
            f"    path: {tmp_path / 'repository'}\n"
            "  - name: second\n"
            "    type: directory\n"
            f"    path: {tmp_path / 'second-repo'}\n"
            f"cache_dir: {tmp_path / 'cache'}\n"
            "retry:\n"
            "  max_attempts: 1\n",
            encoding="utf-8",
        )
        assert main([
            "create", "--path", str(site_tree), "--project", "myblog", "--description", "x",
            "--repository", "second",
        ]) == 0
        snapshot_id = capsys.readouterr().out.strip()

        assert main(["push", snapshot_id]) == 0
        assert (tmp_path / "second-repo" / "snapshots" / f"{snapshot_id}.json").is_file()
        assert not (tmp_path / "repository" / "snapshots" / f"{snapshot_id}.json").exists()

    def test_list_rebuild_index(self, config_file, site_tree, tmp_path, capsys):
        assert main(["create", "--path", str(site_tree), "--project", "myblog", "--description", "x"]) == 0
        snapshot_id = capsys.readouterr().out.strip()
        (tmp_path / "cache" / "index.jsonl").unlink()

        assert main(["list"]) == 0
        assert snapshot_id not in capsys.readouterr().out

        assert main(["list", "--rebuild-index"]) == 0
        assert snapshot_id in capsys.readouterr().out

    def test_pull_into_other_cache(self, config_file, site_tree, tmp_path, monkeypatch, capsys):
        assert main(["create", "--path", str(site_tree), "--project", "myblog", "--description", "x"]) == 0
        snapshot_id = capsys.readouterr().out.strip()
        assert main(["push", snapshot_id]) == 0

        monkeypatch.setenv("SITESNAP_CACHE_DIR", str(tmp_path / "second-cache"))
        assert main(["pull", snapshot_id]) == 0
        assert (tmp_path / "second-cache" / "snapshots" / snapshot_id / "manifest.json").is_file()

    def test_pull_unknown_exits_1(self, config_file):
        assert main(["pull", "doesnotexist"]) == 1

    def test_restore(self, config_file, site_tree, tmp_path, capsys):
        assert main(["create", "--path", str(site_tree), "--project", "myblog", "--description", "x"]) == 0
        snapshot_id = capsys.readouterr().out.strip()

        out = tmp_path / "restored"
        assert main(["restore", snapshot_id, "--out", str(out)]) == 0
        assert (out / "files" / "index.php").read_bytes() == (site_tree / "index.php").read_bytes()

    def test_pack_and_unpack(self, config_file, site_tree, tmp_path, monkeypatch, capsys):
        assert main(["create", "--path", str(site_tree), "--project", "myblog", "--description", "x"]) == 0
        snapshot_id = capsys.readouterr().out.strip()

        archive = tmp_path / "snap.zip"
        assert main(["pack", snapshot_id, "--out", str(archive)]) == 0
        capsys.readouterr()

        monkeypatch.setenv("SITESNAP_CACHE_DIR", str(tmp_path / "second-cache"))
        assert main(["unpack", "--in", str(archive)]) == 0
        assert capsys.readouterr().out.strip() == snapshot_id

    def test_delete(self, config_file, site_tree, capsys):
        assert main(["create", "--path", str(site_tree), "--project", "myblog", "--description", "x"]) == 0
        snapshot_id = capsys.readouterr().out.strip()

        assert main(["delete", snapshot_id]) == 0
        assert main(["delete", snapshot_id]) == 1

    def test_repositories(self, config_file, capsys):
        assert main(["repositories"]) == 0

        assert "* team" in capsys.readouterr().out

    def test_no_repository_configured(self, tmp_path, site_tree):
        assert push_site(site_tree) == 1

    def test_no_command(self, config_file):
        assert main([]) == 1


class TestPrompts:
    """Tests for interactive prompting."""

    def test_given_valid_value_not_prompted(self):
        def no_input(_):
            raise AssertionError("should not prompt")

        assert prompt_until_valid("Project slug", validate_slug, "myblog", no_input) == "myblog"

    def test_given_invalid_value_raises(self):
        with pytest.raises(ValidationError):
            prompt_until_valid("Project slug", validate_slug, "my blog!", lambda _: "fixed")

    def test_prompts_until_valid(self):
        answers = iter(["my blog!", "", "myblog"])

        assert prompt_until_valid("Project slug", validate_slug, None, lambda _: next(answers)) == "myblog"

    def test_confirm(self):
        assert confirm("Continue?", assume_yes=True, input_fn=lambda _: "n")
        assert confirm("Continue?", assume_yes=False, input_fn=lambda _: "y")
        assert not confirm("Continue?", assume_yes=False, input_fn=lambda _: "")
