"""Tests for builds/service.py module."""

import pytest

from layerchef.builds.models import BuildRecord
from layerchef.builds.service import (
    BuildNotFoundError,
    compile_application,
    get_build,
    list_builds,
)
from layerchef.cache.store import LayerStore
from layerchef.errors import CompilationError
from layerchef.projects.toolchain import resolve_toolchain
from layerchef.types import BuildStatus, StageName

LAYER_KEY = "sha256:" + "12" * 32


@pytest.fixture
def store(settings, tmp_path):
    """Store holding a layer with a deps/ directory."""
    store = LayerStore(settings.cache_dir)
    cooked = tmp_path / "cooked"
    (cooked / "deps").mkdir(parents=True)
    (cooked / "deps" / "alpha-1.0.txt").write_text("alpha 1.0\n")
    store.commit_layer(LAYER_KEY, cooked, ["deps"])
    return store


class TestCompileApplication:
    """Tests for compile_application."""

    def test_compiles_with_restored_layer(self, demo_source, demo_project, settings, store, tmp_path):
        """The build should see restored dependencies and the source."""
        compiled = compile_application(
            demo_source,
            resolve_toolchain(demo_project),
            LAYER_KEY,
            settings,
            tmp_path / "build.log",
            store=store,
        )
        try:
            assert compiled.restored_paths == ["deps"]
            assert compiled.artifact_path == compiled.workspace / "dist" / "demo"
            assert compiled.artifact_path.is_file()
            assert 'print("ok")' in compiled.artifact_path.read_text()
        finally:
            compiled.cleanup()
        assert not compiled.workspace.exists()
        assert not (demo_source / "dist").exists()

    def test_compile_error(self, demo_source, demo_project, settings, store, tmp_path):
        """A failing build should raise CompilationError and drop the workspace."""
        (demo_source / "src" / "main.py").write_text("COMPILE_ERROR\n")
        log = tmp_path / "build.log"
        with pytest.raises(CompilationError) as exc_info:
            compile_application(
                demo_source, resolve_toolchain(demo_project), LAYER_KEY, settings, log, store=store
            )
        assert exc_info.value.exit_code == 13
        assert exc_info.value.log_path == str(log)
        assert "cannot compile" in log.read_text()
        assert list(settings.tmp_dir.iterdir()) == []

    def test_missing_layer(self, demo_source, demo_project, settings, store, tmp_path):
        """An unknown layer key should fail the build stage."""
        with pytest.raises(CompilationError) as exc_info:
            compile_application(
                demo_source,
                resolve_toolchain(demo_project),
                "sha256:" + "99" * 32,
                settings,
                tmp_path / "build.log",
                store=store,
            )
        assert exc_info.value.code == "compilation_failure"
        assert exc_info.value.reason == "layer_not_found"


class TestBuildQueries:
    """Tests for get_build and list_builds."""

    def _add(self, session, project, status):
        record = BuildRecord(
            project_name=project,
            binary=project,
            source_root="/src",
            status=status.value,
        )
        session.add(record)
        session.flush()
        return record

    def test_get_build(self, session):
        """get_build should return the record or raise."""
        record = self._add(session, "demo", BuildStatus.PENDING)
        assert get_build(session, record.id) is record
        with pytest.raises(BuildNotFoundError):
            get_build(session, 9999)

    def test_list_builds_filters(self, session):
        """Filters should narrow results, newest first."""
        a = self._add(session, "demo", BuildStatus.SUCCEEDED)
        b = self._add(session, "demo", BuildStatus.FAILED)
        self._add(session, "other", BuildStatus.SUCCEEDED)

        assert [r.id for r in list_builds(session, project_name="demo")] == [b.id, a.id]
        assert [r.id for r in list_builds(session, status=BuildStatus.FAILED)] == [b.id]
        assert len(list_builds(session, limit=1)) == 1


class TestBuildRecord:
    """Tests for BuildRecord state transitions."""

    def test_lifecycle(self, session):
        """A record should move through running to succeeded."""
        record = BuildRecord(project_name="demo", binary="demo", source_root="/src")
        session.add(record)
        session.flush()

        record.mark_running()
        record.mark_stage(StageName.BUILD)
        assert record.status == BuildStatus.RUNNING.value
        assert record.stage == StageName.BUILD.value

        record.mark_succeeded()
        assert record.is_succeeded()
        assert record.finished_at is not None

    def test_failed(self, session):
        """mark_failed should record the error type and message."""
        record = BuildRecord(project_name="demo", binary="demo", source_root="/src")
        session.add(record)
        record.mark_failed("compilation_failure", "boom")
        assert record.status == BuildStatus.FAILED.value
        assert record.error_type == "compilation_failure"
        assert record.error_message == "boom"
        assert not record.is_succeeded()
