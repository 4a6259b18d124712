"""Tests for the CLI.

Commands run through Typer's CliRunner with every layerchef directory
pointed at a temporary path.
"""

import json

import pytest
from typer.testing import CliRunner

from layerchef import __version__
from layerchef.cli import app
from layerchef.projects.io import project_to_yaml_string

runner = CliRunner()


@pytest.fixture
def cli_env(tmp_path, monkeypatch):
    """Point all layerchef settings at tmp_path."""
    monkeypatch.setenv("LAYERCHEF_CACHE_DIR", str(tmp_path / "cache"))
    monkeypatch.setenv("LAYERCHEF_IMAGES_DIR", str(tmp_path / "images"))
    monkeypatch.setenv("LAYERCHEF_BUILDS_DIR", str(tmp_path / "builds"))
    monkeypatch.setenv("LAYERCHEF_TMP_DIR", str(tmp_path / "tmp"))
    monkeypatch.setenv("LAYERCHEF_DB_URL", f"sqlite:///{tmp_path}/layerchef.db")
    # Quiet logging keeps stdout parseable when stderr is mixed in
    monkeypatch.setenv("LAYERCHEF_LOG_LEVEL", "CRITICAL")
    return tmp_path


@pytest.fixture
def project_source(demo_source, demo_project):
    """Demo source tree with its project file written in."""
    (demo_source / "layerchef.yaml").write_text(project_to_yaml_string(demo_project))
    return demo_source


class TestCLIHelp:
    """Test CLI help and version commands."""

    def test_help_returns_zero(self) -> None:
        """CLI --help should return exit code 0."""
        result = runner.invoke(app, ["--help"])
        assert result.exit_code == 0
        assert "layerchef" in result.stdout

    def test_version_flag(self) -> None:
        """CLI --version should print version and exit 0."""
        result = runner.invoke(app, ["--version"])
        assert result.exit_code == 0
        assert __version__ in result.stdout

    def test_no_args_shows_help(self) -> None:
        """CLI with no args should show help."""
        result = runner.invoke(app, [])
        assert "Usage:" in result.stdout

    @pytest.mark.parametrize("group", ["project", "cache", "builds", "images"])
    def test_subcommand_help(self, group) -> None:
        """Each subcommand group should have help."""
        result = runner.invoke(app, [group, "--help"])
        assert result.exit_code == 0


class TestCLIConfig:
    """Test CLI config command."""

    def test_config_command(self, cli_env) -> None:
        """CLI config should show all sections."""
        result = runner.invoke(app, ["config"])
        assert result.exit_code == 0
        assert "Paths:" in result.stdout
        assert "Timeouts (seconds):" in result.stdout

    def test_config_json(self, cli_env) -> None:
        """CLI config --json should reflect environment overrides."""
        result = runner.invoke(app, ["config", "--json"])
        assert result.exit_code == 0
        data = json.loads(result.stdout)
        assert data["cache_dir"] == str(cli_env / "cache")
        for key in ("images_dir", "builds_dir", "lock_timeout", "cook_timeout"):
            assert key in data


class TestCLIRecipeAndProject:
    """Test recipe and project commands."""

    def test_recipe_digest(self, cli_env, project_source) -> None:
        """recipe --digest should print a stable digest."""
        first = runner.invoke(app, ["recipe", str(project_source), "--digest"])
        (project_source / "src" / "main.py").write_text('print("ok2")\n')
        second = runner.invoke(app, ["recipe", str(project_source), "--digest"])
        assert first.exit_code == 0
        assert first.stdout.strip().startswith("sha256:")
        assert first.stdout == second.stdout

    def test_recipe_json(self, cli_env, project_source) -> None:
        """recipe without options should print canonical JSON."""
        result = runner.invoke(app, ["recipe", str(project_source)])
        assert result.exit_code == 0
        data = json.loads(result.stdout)
        assert data["format"] == "cargo"

    def test_recipe_malformed_exit_code(self, cli_env, project_source) -> None:
        """A malformed manifest should exit with its error status."""
        (project_source / "Cargo.toml").write_text("[package\n")
        result = runner.invoke(app, ["recipe", str(project_source)])
        assert result.exit_code == 11
        assert "manifest_malformed" in result.stdout

    def test_project_validate(self, cli_env, project_source) -> None:
        """project validate should accept the demo project."""
        result = runner.invoke(app, ["project", "validate", str(project_source)])
        assert result.exit_code == 0
        assert "demo" in result.stdout

    def test_project_validate_invalid(self, cli_env, tmp_path) -> None:
        """An invalid project file should exit 2."""
        (tmp_path / "layerchef.yaml").write_text("name: demo\n")
        result = runner.invoke(app, ["project", "validate", str(tmp_path)])
        assert result.exit_code == 2

    def test_project_show(self, cli_env, project_source) -> None:
        """project show should print the effective YAML."""
        result = runner.invoke(app, ["project", "show", str(project_source)])
        assert result.exit_code == 0
        assert "binary: demo" in result.stdout


class TestCLIBuild:
    """Test build and the inspection commands that follow it."""

    def test_build_json_then_inspect(self, cli_env, project_source) -> None:
        """A JSON build should be visible through builds, images and cache."""
        result = runner.invoke(app, ["build", str(project_source), "--json"])
        assert result.exit_code == 0, result.output
        data = json.loads(result.stdout)
        assert data["status"] == "succeeded"
        assert data["layer_cache_hit"] is False
        assert [s["stage"] for s in data["stages"]] == [
            "prepare",
            "extract",
            "cache_deps",
            "build",
            "package",
        ]

        builds = json.loads(runner.invoke(app, ["builds", "list", "--json"]).stdout)
        assert [b["id"] for b in builds] == [data["build_id"]]
        assert builds[0]["images"] == [data["image"]["image_id"]]

        images = json.loads(runner.invoke(app, ["images", "list", "--json"]).stdout)
        assert images[0]["image_id"] == data["image"]["image_id"]

        layers = json.loads(runner.invoke(app, ["cache", "list", "--json"]).stdout)
        assert [layer["key"] for layer in layers] == [data["layer_key"]]

        shown = runner.invoke(app, ["builds", "show", str(data["build_id"]), "--json"])
        assert json.loads(shown.stdout)["layer_key"] == data["layer_key"]

        envs = json.loads(runner.invoke(app, ["cache", "environments", "--json"]).stdout)
        assert [e["key"] for e in envs] == [data["environment_key"]]

    def test_build_failure_json(self, cli_env, project_source) -> None:
        """A failed build should exit with its stage status and JSON error."""
        (project_source / "src" / "main.py").write_text("COMPILE_ERROR\n")
        result = runner.invoke(app, ["build", str(project_source), "--json"])
        assert result.exit_code == 13
        error = json.loads(result.stdout)["error"]
        assert error["code"] == "compilation_failure"
        assert error["stage"] == "build"

        failed = runner.invoke(app, ["builds", "list", "--status", "failed", "--json"])
        assert len(json.loads(failed.stdout)) == 1

    def test_build_failure_shows_log_tail(self, cli_env, project_source) -> None:
        """A failed build should print the end of the stage log."""
        (project_source / "src" / "main.py").write_text("COMPILE_ERROR\n")
        result = runner.invoke(app, ["build", str(project_source)])
        assert result.exit_code == 13
        assert "compilation_failure" in result.stdout
        assert "error: cannot compile src/main.py" in result.stdout

    def test_run_image(self, cli_env, project_source) -> None:
        """run should execute the image entrypoint and return its status."""
        built = json.loads(
            runner.invoke(app, ["build", str(project_source), "--json"]).stdout
        )
        result = runner.invoke(app, ["run", built["image"]["path"]])
        assert result.exit_code == 0

    def test_cache_prune_all(self, cli_env, project_source) -> None:
        """cache prune --all should remove the cooked layer."""
        runner.invoke(app, ["build", str(project_source), "--json"])
        result = runner.invoke(app, ["cache", "prune", "--all"])
        assert result.exit_code == 0
        assert "Pruned 1 layer(s)" in result.stdout
        layers = json.loads(runner.invoke(app, ["cache", "list", "--json"]).stdout)
        assert layers == []

    def test_cache_prune_requires_scope(self, cli_env) -> None:
        """cache prune without --older-than or --all should fail."""
        result = runner.invoke(app, ["cache", "prune"])
        assert result.exit_code == 1

    def test_builds_show_missing(self, cli_env) -> None:
        """builds show for an unknown ID should exit 1."""
        result = runner.invoke(app, ["builds", "show", "999"])
        assert result.exit_code == 1
