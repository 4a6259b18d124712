"""Tests for project file loading."""

import json

import pytest

from layerchef.errors import ProjectError
from layerchef.projects.io import (
    find_project_file,
    infer_cargo_project,
    load_project,
    load_project_for_source,
    project_to_yaml_string,
)


class TestLoadProject:
    """Test load_project function."""

    def test_load_yaml(self, tmp_path):
        """Should load a valid YAML project file."""
        path = tmp_path / "layerchef.yaml"
        path.write_text(
            "name: rvm\n"
            "binary: rvm\n"
            "runtime:\n"
            "  workdir: /srv\n"
            "  entrypoint: ['./rvm', '--port', '8080']\n"
        )
        project = load_project(path)
        assert project.name == "rvm"
        assert project.runtime.workdir == "/srv"
        assert project.runtime.entrypoint == ["./rvm", "--port", "8080"]

    def test_load_json(self, tmp_path):
        """Should load a valid JSON project file."""
        path = tmp_path / "layerchef.json"
        path.write_text(json.dumps({"name": "rvm", "binary": "rvm"}))
        assert load_project(path).binary == "rvm"

    def test_invalid_yaml(self, tmp_path):
        """Should map YAML errors to ProjectError."""
        path = tmp_path / "layerchef.yaml"
        path.write_text("name: [unclosed\n")
        with pytest.raises(ProjectError) as exc_info:
            load_project(path)
        assert exc_info.value.exit_code == 2

    def test_validation_error(self, tmp_path):
        """Should map validation errors to ProjectError."""
        path = tmp_path / "layerchef.yaml"
        path.write_text("name: rvm\n")
        with pytest.raises(ProjectError, match="Invalid project file"):
            load_project(path)

    def test_non_mapping(self, tmp_path):
        """Should reject a YAML list document."""
        path = tmp_path / "layerchef.yaml"
        path.write_text("- a\n- b\n")
        with pytest.raises(ProjectError):
            load_project(path)

    def test_missing_file(self, tmp_path):
        """Should raise ProjectError for a missing file."""
        with pytest.raises(ProjectError, match="not found"):
            load_project(tmp_path / "layerchef.yaml")

    def test_unsupported_extension(self, tmp_path):
        """Should reject unknown extensions."""
        path = tmp_path / "layerchef.toml"
        path.write_text("name = 'rvm'\n")
        with pytest.raises(ProjectError, match="Unsupported file extension"):
            load_project(path)


class TestLoadProjectForSource:
    """Test project discovery in a source tree."""

    def test_prefers_project_file(self, tmp_path):
        """A project file should win over Cargo.toml inference."""
        (tmp_path / "Cargo.toml").write_text('[package]\nname = "crate-name"\n')
        (tmp_path / "layerchef.yml").write_text("name: svc\nbinary: svc\n")
        assert find_project_file(tmp_path) == tmp_path / "layerchef.yml"
        assert load_project_for_source(tmp_path).name == "svc"

    def test_infers_cargo_project(self, tmp_path):
        """Without a project file the package name should be used."""
        (tmp_path / "Cargo.toml").write_text('[package]\nname = "rvm"\nversion = "1.2.3"\n')
        project = load_project_for_source(tmp_path)
        assert project.name == "rvm"
        assert project.binary == "rvm"
        assert project.toolchain.preset == "cargo"

    def test_infer_requires_package_name(self, tmp_path):
        """A virtual workspace manifest cannot be inferred."""
        (tmp_path / "Cargo.toml").write_text('[workspace]\nmembers = ["a"]\n')
        with pytest.raises(ProjectError, match="missing \\[package\\].name"):
            infer_cargo_project(tmp_path)

    def test_nothing_to_infer(self, tmp_path):
        """An empty tree should raise ProjectError."""
        with pytest.raises(ProjectError, match="No project file or Cargo.toml"):
            load_project_for_source(tmp_path)

    def test_missing_source_root(self, tmp_path):
        """A missing source tree should raise ProjectError."""
        with pytest.raises(ProjectError, match="Source tree not found"):
            load_project_for_source(tmp_path / "missing")


class TestProjectToYaml:
    """Test YAML export."""

    def test_round_trip(self, tmp_path):
        """Exported YAML should load back to an equal project."""
        (tmp_path / "layerchef.yaml").write_text(
            "name: svc\nbinary: svc\nruntime:\n  labels:\n    team: core\n"
        )
        project = load_project_for_source(tmp_path)
        out = tmp_path / "copy" / "layerchef.yaml"
        out.parent.mkdir()
        out.write_text(project_to_yaml_string(project))
        assert load_project(out) == project
