import json

import numpy as np
import pytest

from scene_io import ReconExporter, load_matches, load_regions, load_scene, save_scene, write_desc
from utils import Landmark, Observation, View


def test_scene_json_round_trip(triangle_scene, tmp_path):
    triangle_scene.views[3] = View(3, intrinsic_id=0, pose_id=None, path="img_003.jpg")
    triangle_scene.landmarks[4] = Landmark(
        np.array([0.1, 0.2, 5.0]), "sift", {0: Observation(np.array([330.0, 260.0]), 7), 2: Observation(np.zeros(2), 1)}
    )
    save_scene(triangle_scene, tmp_path / "scene.json")
    scene = load_scene(tmp_path / "scene.json")

    assert scene.views == triangle_scene.views
    assert scene.valid_views() == {0, 1, 2}
    for pose_id, pose in triangle_scene.poses.items():
        np.testing.assert_allclose(scene.poses[pose_id].R, pose.R)
        np.testing.assert_allclose(scene.poses[pose_id].t, pose.t, atol=1e-12)
    np.testing.assert_allclose(scene.intrinsics[0].K, triangle_scene.intrinsics[0].K)
    landmark = scene.landmarks[4]
    np.testing.assert_allclose(landmark.X, [0.1, 0.2, 5.0])
    assert landmark.describer_type == "sift"
    assert landmark.observations[0].feature_id == 7
    np.testing.assert_allclose(landmark.observations[0].x, [330.0, 260.0])


def test_missing_scene_file(tmp_path):
    with pytest.raises(FileNotFoundError):
        load_scene(tmp_path / "missing.json")


@pytest.mark.parametrize(
    "content",
    [
        "{not json",
        json.dumps({"views": [{"intrinsicId": 0}]}),
        json.dumps({"poses": [{"poseId": 0, "rotation": [[1, 0], [0, 1]], "center": [0, 0, 0]}]}),
    ],
)
def test_invalid_scene_file(tmp_path, content):
    path = tmp_path / "scene.json"
    path.write_text(content)
    with pytest.raises(ValueError):
        load_scene(path)


def test_load_regions_npz_and_feat_desc(tmp_path, rng):
    kp0, des0 = rng.uniform(0, 640, size=(5, 2)), rng.integers(0, 255, size=(5, 128)).astype(np.uint8)
    np.savez(tmp_path / "0.sift.npz", kp=kp0, des=des0)

    kp1, des1 = rng.uniform(0, 640, size=(3, 2)), rng.integers(0, 255, size=(3, 128)).astype(np.uint8)
    # x y scale orientation
    np.savetxt(tmp_path / "1.sift.feat", np.hstack((kp1, np.ones((3, 2)))))
    write_desc(tmp_path / "1.sift.desc", des1)

    store = load_regions(tmp_path, [0, 1], ["sift"])
    assert store.view_ids == {0, 1}
    np.testing.assert_allclose(store.regions_for_view(0, "sift").kp, kp0)
    np.testing.assert_array_equal(store.regions_for_view(0, "sift").des, des0)
    np.testing.assert_allclose(store.regions_for_view(1, "sift").kp, kp1)
    np.testing.assert_array_equal(store.regions_for_view(1, "sift").des, des1)


def test_load_regions_missing_view(tmp_path):
    np.savez(tmp_path / "0.sift.npz", kp=np.zeros((1, 2)), des=np.zeros((1, 128)))
    with pytest.raises(FileNotFoundError):
        load_regions(tmp_path, [0, 1], ["sift"])
    with pytest.raises(FileNotFoundError):
        load_regions(tmp_path / "nowhere", [0], ["sift"])


def test_load_regions_size_mismatch(tmp_path):
    np.savez(tmp_path / "0.sift.npz", kp=np.zeros((2, 2)), des=np.zeros((3, 128)))
    with pytest.raises(ValueError):
        load_regions(tmp_path, [0], ["sift"])


def test_truncated_desc_file(tmp_path):
    np.savetxt(tmp_path / "0.sift.feat", np.zeros((2, 4)))
    (tmp_path / "0.sift.desc").write_bytes(b"\x02\x00")
    with pytest.raises(ValueError):
        load_regions(tmp_path, [0], ["sift"])


MATCHES = """0 1
1
sift 2
0 0
1 1
2 1
2
sift 1
3 4
akaze 1
0 0
0 3
1
sift 1
0 0
"""


def test_load_matches(tmp_path):
    (tmp_path / "0.matches.f.txt").write_text(MATCHES)
    matches = load_matches([0, 1, 2], tmp_path, ["sift"], "f")

    # pair (0, 3) references an unknown view, akaze is not requested
    assert set(matches) == {(0, 1), (1, 2)}
    np.testing.assert_array_equal(matches[(0, 1)]["sift"], [[0, 0], [1, 1]])
    # stored as (2, 1): columns swapped to follow the ordered pair
    np.testing.assert_array_equal(matches[(1, 2)]["sift"], [[4, 3]])
    assert "akaze" not in matches[(1, 2)]


def test_load_matches_merges_files_and_drops_duplicates(tmp_path):
    (tmp_path / "0.matches.txt").write_text("0 1\n1\nsift 2\n0 0\n1 1\n")
    (tmp_path / "1.matches.txt").write_text("1 0\n1\nsift 2\n1 1\n5 2\n")
    matches = load_matches([0, 1], tmp_path, ["sift"], "f")
    np.testing.assert_array_equal(matches[(0, 1)]["sift"], [[0, 0], [1, 1], [2, 5]])


def test_load_matches_prefers_model_specific_files(tmp_path):
    (tmp_path / "0.matches.e.txt").write_text("0 1\n1\nsift 1\n2 2\n")
    (tmp_path / "0.matches.txt").write_text("0 1\n1\nsift 1\n0 0\n")
    np.testing.assert_array_equal(load_matches([0, 1], tmp_path, ["sift"], "e")[(0, 1)]["sift"], [[2, 2]])
    np.testing.assert_array_equal(load_matches([0, 1], tmp_path, ["sift"], "f")[(0, 1)]["sift"], [[0, 0]])


@pytest.mark.parametrize("content", ["0 1\n1\nsift 3\n0 0\n1 1\n", "0 1\n1\nsift two\n", "0 1\n"])
def test_malformed_matches_file(tmp_path, content):
    (tmp_path / "0.matches.txt").write_text(content)
    with pytest.raises(ValueError, match="Malformed"):
        load_matches([0, 1], tmp_path, ["sift"])


def test_missing_matches(tmp_path):
    with pytest.raises(FileNotFoundError):
        load_matches([0, 1], tmp_path, ["sift"])


def test_save_ply(triangle_scene, cloud, tmp_path):
    for i, X in enumerate(cloud):
        triangle_scene.landmarks[i] = Landmark(X, "sift", {})
    ReconExporter(triangle_scene).save_ply(tmp_path / "out" / "cloud.ply")

    lines = (tmp_path / "out" / "cloud.ply").read_text().splitlines()
    header_end = lines.index("end_header")
    # 20 points + (apex + 4 corners) per camera, 8 edges per camera
    assert "element vertex 35" in lines[:header_end]
    assert "element edge 24" in lines[:header_end]
    body = lines[header_end + 1 :]
    assert len(body) == 35 + 24
    assert body[0].endswith(" 255 255 255")
    assert body[20].endswith(" 255 0 0")
    # first camera edge links its apex (vertex 20) to a corner
    assert body[35].split()[:2] == ["20", "21"]
