"""Tests for ORM models and CRUD operations.

These tests verify the database models, relationships, and basic
CRUD operations using an in-memory SQLite database.
"""

import pytest
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import sessionmaker

from layerchef.builds.models import BuildRecord
from layerchef.cache.models import DependencyLayer
from layerchef.db import (
    SQLITE_BUSY_TIMEOUT,
    Base,
    create_all_tables,
    get_engine,
    get_session,
    init_database,
)
from layerchef.images.models import RuntimeImage
from layerchef.types import BuildStatus


class TestDatabaseSetup:
    """Test database setup and helpers."""

    def test_create_all_tables(self, tmp_path):
        """create_all_tables should create all model tables."""
        engine = get_engine(f"sqlite:///{tmp_path}/nested/test.db")
        create_all_tables(engine)
        assert (tmp_path / "nested" / "test.db").exists()
        for table in ("build_records", "dependency_layers", "runtime_images"):
            assert table in Base.metadata.tables

    def test_get_session_commits(self, tmp_path):
        """get_session should commit on success."""
        engine = get_engine(f"sqlite:///{tmp_path}/test.db")
        create_all_tables(engine)
        factory = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)

        with get_session(factory) as session:
            session.add(BuildRecord(project_name="demo", binary="demo", source_root="/src"))

        with get_session(factory) as session:
            record = session.query(BuildRecord).filter_by(project_name="demo").first()
            assert record is not None
            assert record.status == BuildStatus.PENDING.value
            assert record.requested_at is not None

    def test_get_session_rolls_back(self, tmp_path):
        """get_session should roll back when the block raises."""
        engine = get_engine(f"sqlite:///{tmp_path}/test.db")
        create_all_tables(engine)
        factory = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)

        with pytest.raises(RuntimeError):
            with get_session(factory) as session:
                session.add(BuildRecord(project_name="demo", binary="demo", source_root="/src"))
                session.flush()
                raise RuntimeError("boom")

        with get_session(factory) as session:
            assert session.query(BuildRecord).count() == 0

    def test_sqlite_waits_for_writers(self, tmp_path):
        """SQLite engines should wait on locks held by other builds."""
        engine = get_engine(f"sqlite:///{tmp_path}/test.db")
        with engine.connect() as conn:
            timeout = conn.exec_driver_sql("PRAGMA busy_timeout").scalar()
        assert timeout == SQLITE_BUSY_TIMEOUT * 1000

    def test_init_database(self, tmp_path):
        """init_database should create tables and keep objects after commit."""
        factory = init_database(f"sqlite:///{tmp_path}/history/test.db")
        with get_session(factory) as session:
            record = BuildRecord(project_name="demo", binary="demo", source_root="/src")
            session.add(record)
        assert record.project_name == "demo"
        assert (tmp_path / "history" / "test.db").exists()


class TestDependencyLayerModel:
    """Test DependencyLayer model."""

    def _layer(self, key="sha256:aaa"):
        return DependencyLayer(
            layer_key=key,
            recipe_digest="sha256:recipe",
            environment_key="sha256:env",
            path="/cache/layers/aaa",
        )

    def test_mark_used(self, session):
        """Hits should be counted and last use recorded."""
        layer = self._layer()
        session.add(layer)
        session.commit()

        layer.mark_used(hit=False)
        assert layer.hit_count == 0
        assert layer.last_used_at is not None
        layer.mark_used(hit=True)
        assert layer.hit_count == 1

    def test_unique_key(self, session):
        """Layer keys should be unique."""
        session.add(self._layer())
        session.commit()
        session.add(self._layer())
        with pytest.raises(IntegrityError):
            session.commit()


class TestRuntimeImageModel:
    """Test RuntimeImage model and its relationship to builds."""

    def test_build_relationship(self, session):
        """Images should be reachable from their build and cascade on delete."""
        build = BuildRecord(project_name="demo", binary="demo", source_root="/src")
        session.add(build)
        session.flush()
        image = RuntimeImage(
            build_id=build.id,
            project_name="demo",
            image_id="sha256:img",
            path="/images/demo/img",
            binary="demo",
            artifact_sha256="abc",
            size_bytes=10,
            entrypoint=["./demo"],
            working_dir="/app",
        )
        session.add(image)
        session.commit()
        session.refresh(build)

        assert [i.image_id for i in build.images] == ["sha256:img"]
        assert image.build is build
        assert image.entrypoint == ["./demo"]

        session.delete(build)
        session.commit()
        assert session.query(RuntimeImage).count() == 0
