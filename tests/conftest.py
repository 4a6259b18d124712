"""Shared fixtures for layerchef tests.

Pipeline tests use a custom toolchain made of small Python scripts so no
real compiler is needed:

- cook.py reads ``[dependencies]`` from Cargo.toml, "fetches" each one into
  ``deps/`` and appends a line per fetch to ``$FETCH_LOG``. It also records
  every file it can see to ``$COOK_LISTING``. ``$COOK_FAIL`` makes it fail
  and ``$COOK_SLEEP`` delays it.
- build.py refuses to run without ``deps/`` and turns ``src/main.py`` into
  an executable script at ``dist/<binary>``. A source containing
  ``COMPILE_ERROR`` fails the build.
"""

import sys
import textwrap
from pathlib import Path

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from layerchef.config import Settings
from layerchef.db import create_all_tables, drop_all_tables
from layerchef.projects.schema import ProjectSchema

COOK_SCRIPT = textwrap.dedent(
    """\
    import os
    import sys
    import time
    import tomllib
    from pathlib import Path

    root = Path.cwd()
    listing = os.environ.get("COOK_LISTING")
    if listing:
        with open(listing, "w") as f:
            for path in sorted(p for p in root.rglob("*") if p.is_file()):
                f.write(path.relative_to(root).as_posix() + "\\n")

    if os.environ.get("COOK_FAIL"):
        print("cook failed on purpose")
        sys.exit(3)
    time.sleep(float(os.environ.get("COOK_SLEEP", "0")))

    with open("Cargo.toml", "rb") as f:
        manifest = tomllib.load(f)
    deps = Path("deps")
    deps.mkdir(exist_ok=True)
    with open(os.environ["FETCH_LOG"], "a") as log:
        for name, version in sorted(manifest.get("dependencies", {}).items()):
            log.write(f"fetch {name} {version}\\n")
            (deps / f"{name}-{version}.txt").write_text(f"{name} {version}\\n")
    print("cooked", len(manifest.get("dependencies", {})), "dependencies")
    """
)

BUILD_SCRIPT = textwrap.dedent(
    """\
    import os
    import sys
    from pathlib import Path

    binary = sys.argv[1]
    if not Path("deps").is_dir():
        print("dependencies were not restored")
        sys.exit(4)
    source = Path("src/main.py").read_text()
    if "COMPILE_ERROR" in source:
        print("error: cannot compile src/main.py")
        sys.exit(1)
    if os.environ.get("SKIP_ARTIFACT"):
        sys.exit(0)
    out = Path("dist") / binary
    out.parent.mkdir(parents=True, exist_ok=True)
    out.write_text("#!" + sys.executable + "\\n" + source)
    out.chmod(0o755)
    print("built", out)
    """
)

DEMO_MANIFEST = textwrap.dedent(
    """\
    [package]
    name = "demo"
    version = "0.1.0"
    edition = "2021"

    [dependencies]
    alpha = "1.0"
    beta = "2.0"
    """
)


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    """Settings with every directory under tmp_path."""
    return Settings(
        cache_dir=tmp_path / "cache",
        images_dir=tmp_path / "images",
        builds_dir=tmp_path / "builds",
        db_url="sqlite:///:memory:",
        tmp_dir=tmp_path / "tmp",
        lock_timeout=5,
        setup_timeout=60,
        cook_timeout=60,
        build_timeout=60,
    )


@pytest.fixture
def engine():
    """Create an in-memory SQLite engine for testing."""
    engine = create_engine("sqlite:///:memory:", echo=False)
    create_all_tables(engine)
    yield engine
    drop_all_tables(engine)


@pytest.fixture
def session(engine):
    """Create a session for testing."""
    factory = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    session = factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def tools_dir(tmp_path: Path) -> Path:
    """Directory outside the source tree holding the toolchain scripts."""
    tools = tmp_path / "tools"
    tools.mkdir()
    (tools / "cook.py").write_text(COOK_SCRIPT)
    (tools / "build.py").write_text(BUILD_SCRIPT)
    return tools


@pytest.fixture
def fetch_log(tmp_path: Path) -> Path:
    """File the cook script appends one line to per fetched dependency."""
    return tmp_path / "fetch.log"


@pytest.fixture
def cook_listing(tmp_path: Path) -> Path:
    """File the cook script writes its visible files to."""
    return tmp_path / "cook-listing.txt"


@pytest.fixture
def demo_project(tools_dir: Path, fetch_log: Path, cook_listing: Path) -> ProjectSchema:
    """Project using the script toolchain."""
    return ProjectSchema.model_validate(
        {
            "name": "demo",
            "binary": "demo",
            "toolchain": {
                "preset": "custom",
                "setup": [[sys.executable, "--version"]],
                "cook": [[sys.executable, str(tools_dir / "cook.py")]],
                "build": [[sys.executable, str(tools_dir / "build.py"), "{binary}"]],
                "artifact_path": "dist/{binary}",
                "cache_paths": ["deps"],
                "env": {
                    "FETCH_LOG": str(fetch_log),
                    "COOK_LISTING": str(cook_listing),
                },
            },
        }
    )


@pytest.fixture
def demo_source(tmp_path: Path) -> Path:
    """Source tree with two dependencies and a main printing 'ok'."""
    root = tmp_path / "src-tree"
    (root / "src").mkdir(parents=True)
    (root / "Cargo.toml").write_text(DEMO_MANIFEST)
    (root / "src" / "main.rs").write_text('fn main() { println!("ok"); }\n')
    (root / "src" / "main.py").write_text('print("ok")\n')
    return root
