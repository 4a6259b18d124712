"""Tests for the dependency layer store."""

import threading

import pytest

from layerchef.cache.store import (
    LAYER_CONTENT,
    LayerStore,
    LayerStoreError,
    layer_lock,
)

KEY = "sha256:" + "ab" * 32
OTHER_KEY = "sha256:" + "cd" * 32


@pytest.fixture
def store(tmp_path):
    return LayerStore(tmp_path / "cache")


@pytest.fixture
def workspace(tmp_path):
    ws = tmp_path / "ws"
    (ws / "deps" / "nested").mkdir(parents=True)
    (ws / "deps" / "a.txt").write_text("alpha")
    (ws / "deps" / "nested" / "b.txt").write_text("beta")
    (ws / "src").mkdir()
    (ws / "src" / "main.rs").write_text("fn main() {}")
    return ws


class TestCommit:
    """Tests for LayerStore.commit_layer."""

    def test_commit_captures_only_cache_paths(self, store, workspace):
        """Only listed cache paths should enter the layer."""
        info = store.commit_layer(KEY, workspace, ["deps"], metadata={"project": "demo"})

        assert store.has_layer(KEY)
        assert info.paths == ["deps"]
        assert info.size_bytes == len("alpha") + len("beta")
        content = info.path / LAYER_CONTENT
        assert (content / "deps" / "nested" / "b.txt").read_text() == "beta"
        assert not (content / "src").exists()
        assert store.get_layer(KEY).metadata == {"project": "demo"}

    def test_missing_cache_path_is_skipped(self, store, workspace):
        """Cache paths the cook did not produce should be skipped."""
        info = store.commit_layer(KEY, workspace, ["deps", "target"])
        assert info.paths == ["deps"]

    def test_no_staging_left_behind(self, store, workspace):
        """The staging area should be empty after a commit."""
        store.commit_layer(KEY, workspace, ["deps"])
        assert list(store.tmp_dir.iterdir()) == []

    def test_existing_layer_is_kept(self, store, workspace):
        """Committing an existing key should keep the first layer."""
        first = store.commit_layer(KEY, workspace, ["deps"])
        (workspace / "deps" / "a.txt").write_text("changed")
        second = store.commit_layer(KEY, workspace, ["deps"])
        assert second.created_at == first.created_at
        assert (second.path / LAYER_CONTENT / "deps" / "a.txt").read_text() == "alpha"

    def test_replace_swaps_content(self, store, workspace):
        """replace=True should publish the new content in place."""
        store.commit_layer(KEY, workspace, ["deps"])
        (workspace / "deps" / "a.txt").write_text("changed")
        info = store.commit_layer(KEY, workspace, ["deps"], replace=True)
        assert (info.path / LAYER_CONTENT / "deps" / "a.txt").read_text() == "changed"
        assert [layer.key for layer in store.list_layers()] == [KEY]
        assert list(store.tmp_dir.iterdir()) == []

    def test_concurrent_commits_produce_one_layer(self, store, workspace):
        """Racing writers under the lock should publish a single layer."""
        errors = []

        def commit():
            try:
                with layer_lock(store.lock_dir, KEY, timeout=10):
                    store.commit_layer(KEY, workspace, ["deps"])
            except Exception as e:  # noqa: BLE001
                errors.append(e)

        threads = [threading.Thread(target=commit) for _ in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert errors == []
        assert [info.key for info in store.list_layers()] == [KEY]


class TestRestoreAndRemove:
    """Tests for restore_layer and remove_layer."""

    def test_restore(self, store, workspace, tmp_path):
        """Restored content should match what was committed."""
        store.commit_layer(KEY, workspace, ["deps"])
        dest = tmp_path / "build"
        dest.mkdir()
        assert store.restore_layer(KEY, dest) == ["deps"]
        assert (dest / "deps" / "a.txt").read_text() == "alpha"

    def test_restore_missing_layer(self, store, tmp_path):
        """Restoring an unknown key should fail with layer_not_found."""
        with pytest.raises(LayerStoreError) as exc_info:
            store.restore_layer(KEY, tmp_path)
        assert exc_info.value.code == "layer_not_found"

    def test_restore_does_not_modify_layer(self, store, workspace, tmp_path):
        """Writes to a restored workspace should not reach the layer."""
        info = store.commit_layer(KEY, workspace, ["deps"])
        dest = tmp_path / "build"
        dest.mkdir()
        store.restore_layer(KEY, dest)
        (dest / "deps" / "a.txt").write_text("mutated")
        assert (info.path / LAYER_CONTENT / "deps" / "a.txt").read_text() == "alpha"

    def test_restore_waits_for_exclusive_holder(self, store, workspace, tmp_path):
        """A restore should not copy while the layer is locked for writing."""
        store.commit_layer(KEY, workspace, ["deps"])
        with layer_lock(store.lock_dir, KEY, timeout=1):
            with pytest.raises(LayerStoreError) as exc_info:
                store.restore_layer(KEY, tmp_path, lock_timeout=0.2)
        assert exc_info.value.code == "lock_timeout"

    def test_remove(self, store, workspace):
        """Removing a layer should make it invisible."""
        store.commit_layer(KEY, workspace, ["deps"])
        store.commit_layer(OTHER_KEY, workspace, ["deps"])
        assert store.remove_layer(KEY) is True
        assert store.remove_layer(KEY) is False
        assert [info.key for info in store.list_layers()] == [OTHER_KEY]


class TestLayerLock:
    """Tests for layer_lock."""

    def test_timeout_while_held(self, store):
        """A second holder should time out while the lock is held."""
        with layer_lock(store.lock_dir, KEY, timeout=1):
            with pytest.raises(TimeoutError):
                with layer_lock(store.lock_dir, KEY, timeout=0.2):
                    pass

    def test_different_keys_do_not_block(self, store):
        """Locks on different keys should be independent."""
        with layer_lock(store.lock_dir, KEY, timeout=1):
            with layer_lock(store.lock_dir, OTHER_KEY, timeout=0.2):
                pass

    def test_shared_holders_coexist(self, store):
        """Shared locks on one key should not block each other."""
        with layer_lock(store.lock_dir, KEY, timeout=1, shared=True):
            with layer_lock(store.lock_dir, KEY, timeout=0.2, shared=True):
                pass

    def test_exclusive_waits_for_shared(self, store):
        """An exclusive lock should time out while a shared holder remains."""
        with layer_lock(store.lock_dir, KEY, timeout=1, shared=True):
            with pytest.raises(TimeoutError):
                with layer_lock(store.lock_dir, KEY, timeout=0.2):
                    pass
        with layer_lock(store.lock_dir, KEY, timeout=0.2):
            pass
