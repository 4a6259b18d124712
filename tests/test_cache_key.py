"""Tests for layer key computation."""

from layerchef.cache.cache_key import (
    LAYER_KEY_SCHEMA_VERSION,
    LayerInputs,
    compute_layer_key,
    compute_layer_key_for_recipe,
)
from layerchef.projects.toolchain import ResolvedToolchain
from layerchef.recipe.models import ManifestFile, Recipe


def make_recipe(contents: str) -> Recipe:
    return Recipe.create(
        format="files", manifests=[ManifestFile(path="deps.txt", contents=contents)]
    )


TOOLCHAIN = ResolvedToolchain(
    preset="custom", binary="demo", cache_paths=("vendor", "build"), artifact_path="demo"
)


def test_key_format():
    """Keys should be prefixed sha256 hex digests."""
    key = compute_layer_key(LayerInputs(recipe_digest="sha256:x", environment_key="sha256:y"))
    assert key.startswith("sha256:")
    assert len(key) == len("sha256:") + 64


def test_same_inputs_same_key():
    """Equal recipes and environments should map to one key."""
    a, _ = compute_layer_key_for_recipe(make_recipe("a==1"), "sha256:env", TOOLCHAIN)
    b, _ = compute_layer_key_for_recipe(make_recipe("a==1"), "sha256:env", TOOLCHAIN)
    assert a == b


def test_recipe_change_changes_key():
    """A different recipe should produce a different key."""
    a, _ = compute_layer_key_for_recipe(make_recipe("a==1"), "sha256:env", TOOLCHAIN)
    b, _ = compute_layer_key_for_recipe(make_recipe("a==2"), "sha256:env", TOOLCHAIN)
    assert a != b


def test_environment_change_changes_key():
    """A different environment should produce a different key."""
    a, _ = compute_layer_key_for_recipe(make_recipe("a==1"), "sha256:env1", TOOLCHAIN)
    b, _ = compute_layer_key_for_recipe(make_recipe("a==1"), "sha256:env2", TOOLCHAIN)
    assert a != b


def test_inputs_are_normalized():
    """Cache paths should be sorted in the recorded inputs."""
    recipe = make_recipe("a==1")
    _, inputs = compute_layer_key_for_recipe(recipe, "sha256:env", TOOLCHAIN)
    assert inputs.to_dict() == {
        "schema_version": LAYER_KEY_SCHEMA_VERSION,
        "recipe_digest": recipe.digest,
        "environment_key": "sha256:env",
        "cache_paths": ["build", "vendor"],
    }
