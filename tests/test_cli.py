import json
import logging

import numpy as np
import pytest
from conftest import make_regions
from typer.testing import CliRunner

from scene_io import load_scene, save_scene
import sfm
from sfm import app
from structure import estimate_structure

runner = CliRunner()


@pytest.fixture(autouse=True)
def restore_logging():
    root = logging.getLogger()
    handlers, level = root.handlers[:], root.level
    yield
    root.handlers[:] = handlers
    root.setLevel(level)


@pytest.fixture
def inputs(triangle_scene, rng, tmp_path):
    save_scene(triangle_scene, tmp_path / "scene.json")
    regions = make_regions(triangle_scene, [0.1, 0.2, 5.0], rng)
    features_dir = tmp_path / "features"
    features_dir.mkdir()
    for view_id in triangle_scene.views:
        r = regions.regions_for_view(view_id, "sift")
        np.savez(features_dir / f"{view_id}.sift.npz", kp=r.kp, des=r.des)
    return tmp_path


def test_structure_from_known_poses(inputs):
    output = inputs / "out" / "scene.json"
    result = runner.invoke(
        app, ["-i", str(inputs / "scene.json"), "-f", str(inputs / "features"), "-o", str(output), "-j", "1"]
    )

    assert result.exit_code == 0, result.output
    assert "#landmark found: 1" in result.output
    assert output.with_suffix(".ply").exists()
    scene = load_scene(output)
    assert len(scene.landmarks) == 1
    np.testing.assert_allclose(scene.landmarks[0].X, [0.1, 0.2, 5.0], atol=1e-6)


def test_ply_output_only(inputs):
    output = inputs / "cloud.ply"
    result = runner.invoke(
        app, ["-i", str(inputs / "scene.json"), "-f", str(inputs / "features"), "-o", str(output), "-j", "1"]
    )
    assert result.exit_code == 0, result.output
    assert output.exists()
    assert not output.with_suffix(".json").exists()


def test_precomputed_matches(inputs):
    matches_dir = inputs / "matches"
    matches_dir.mkdir()
    (matches_dir / "0.matches.txt").write_text("0 1\n1\nsift 1\n0 0\n")
    output = inputs / "scene_out.json"
    result = runner.invoke(
        app,
        ["-i", str(inputs / "scene.json"), "-f", str(inputs / "features"), "-m", str(matches_dir)]
        + ["-o", str(output), "-j", "1"],
    )
    assert result.exit_code == 0, result.output
    # only the (0, 1) pair is considered
    observations = json.loads(output.read_text())["structure"][0]["observations"]
    assert sorted(obs["viewId"] for obs in observations) == [0, 1]


def test_missing_scene(tmp_path):
    result = runner.invoke(
        app, ["-i", str(tmp_path / "missing.json"), "-f", str(tmp_path), "-o", str(tmp_path / "o.json")]
    )
    assert result.exit_code == 1


def test_missing_features(inputs):
    result = runner.invoke(
        app, ["-i", str(inputs / "scene.json"), "-f", str(inputs / "nowhere"), "-o", str(inputs / "o.json")]
    )
    assert result.exit_code == 1
    assert not (inputs / "o.json").exists()


@pytest.mark.parametrize("option", [["-g", "x"], ["--matcher", "flann"], ["-v", "loud"]])
def test_invalid_options(inputs, option):
    result = runner.invoke(
        app, ["-i", str(inputs / "scene.json"), "-f", str(inputs / "features"), "-o", str(inputs / "o.json")] + option
    )
    assert result.exit_code == 1


def test_cli_runs_the_structure_pipeline_once(inputs, monkeypatch):
    calls = []

    def recording_estimate_structure(scene, pairs, regions, config):
        calls.append((set(pairs), config.num_workers))
        return estimate_structure(scene, pairs, regions, config)

    monkeypatch.setattr(sfm, "estimate_structure", recording_estimate_structure)
    result = runner.invoke(
        app,
        ["-i", str(inputs / "scene.json"), "-f", str(inputs / "features"), "-o", str(inputs / "o.json"), "-j", "1"],
    )

    assert result.exit_code == 0, result.output
    assert calls == [({(0, 1), (0, 2), (1, 2)}, 1)]
