"""Loading and saving of scenes, regions, matches and point clouds."""

import json
import logging
from pathlib import Path
from typing import Any, Iterable

import numpy as np
import pandas as pd
import pycolmap

from frustum import compute_frustum
from utils import (
    Intrinsic,
    Landmark,
    Observation,
    PairwiseMatches,
    Pose,
    RegionStore,
    Scene,
    View,
    make_pair,
)

logger = logging.getLogger(__name__)


# --- scene -------------------------------------------------------------------------------------


def load_scene(path: Path) -> Scene:
    """Load a scene from a JSON file or a COLMAP sparse model directory."""
    path = Path(path)
    if path.is_dir():
        return load_scene_colmap(path)
    return load_scene_json(path)


def load_scene_json(path: Path) -> Scene:
    """Read views, intrinsics, poses and (optional) structure from a JSON scene file.

    Layout::

        {"views": [{"viewId", "intrinsicId", "poseId", "path"}],
         "intrinsics": [{"intrinsicId", "width", "height", "K": 3x3, "distortion": [k1, k2, p1, p2]}],
         "poses": [{"poseId", "rotation": 3x3 (world -> camera), "center": [x, y, z]}],
         "structure": [{"landmarkId", "describerType", "X", "observations": [{"viewId", "featureId", "x"}]}]}
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"The input scene file {path} cannot be read")
    try:
        data = json.loads(path.read_text())
        scene = Scene()
        for v in data.get("views", []):
            view_id = int(v["viewId"])
            scene.views[view_id] = View(
                view_id, _optional_id(v.get("intrinsicId")), _optional_id(v.get("poseId")), v.get("path")
            )
        for c in data.get("intrinsics", []):
            scene.intrinsics[int(c["intrinsicId"])] = Intrinsic(
                int(c["width"]), int(c["height"]), np.array(c["K"]), np.array(c.get("distortion", [0.0] * 4))
            )
        for p in data.get("poses", []):
            scene.poses[int(p["poseId"])] = Pose.from_center(np.array(p["rotation"]), np.array(p["center"]))
        for lm in data.get("structure", []):
            observations = {
                int(o["viewId"]): Observation(np.array(o["x"], dtype=np.float64), int(o["featureId"]))
                for o in lm["observations"]
            }
            landmark = Landmark(np.array(lm["X"], dtype=np.float64), lm["describerType"], observations)
            scene.landmarks[int(lm["landmarkId"])] = landmark
    except (json.JSONDecodeError, KeyError, TypeError, ValueError) as e:
        raise ValueError(f"Invalid scene file {path}: {e}") from e

    logger.info(
        f"Loaded scene {path.name}: {len(scene.views)} views, {len(scene.intrinsics)} intrinsics, "
        f"{len(scene.poses)} poses, {len(scene.landmarks)} landmarks"
    )
    return scene


def _optional_id(value: Any) -> int | None:
    return None if value is None else int(value)


def save_scene(scene: Scene, path: Path) -> None:
    """Write the scene, landmarks included, in the JSON layout read by `load_scene_json`."""
    data = {
        "views": [
            {"viewId": v.view_id, "intrinsicId": v.intrinsic_id, "poseId": v.pose_id, "path": v.path}
            for v in scene.views.values()
        ],
        "intrinsics": [
            {"intrinsicId": cid, "width": c.width, "height": c.height, "K": c.K.tolist(), "distortion": c.dist.tolist()}
            for cid, c in scene.intrinsics.items()
        ],
        "poses": [
            {"poseId": pid, "rotation": p.R.tolist(), "center": p.center.tolist()} for pid, p in scene.poses.items()
        ],
        "structure": [
            {
                "landmarkId": lid,
                "describerType": lm.describer_type,
                "X": np.asarray(lm.X).tolist(),
                "observations": [
                    {"viewId": view_id, "featureId": obs.feature_id, "x": np.asarray(obs.x).tolist()}
                    for view_id, obs in lm.observations.items()
                ],
            }
            for lid, lm in scene.landmarks.items()
        ],
    }
    path = Path(path)
    path.parent.mkdir(exist_ok=True, parents=True)
    with open(path, "w") as f:
        json.dump(data, f, indent=2)
    logger.info(f"Saved scene with {len(scene.landmarks)} landmarks to {path}")


def _colmap_distortion(camera: pycolmap.Camera) -> np.ndarray:
    """OpenCV distortion coefficients (k1, k2, p1, p2) of a COLMAP camera."""
    model, params = camera.model.name, np.asarray(camera.params, dtype=np.float64)
    if model in ("SIMPLE_PINHOLE", "PINHOLE"):
        return np.zeros(4)
    if model == "SIMPLE_RADIAL":
        return np.array([params[3], 0.0, 0.0, 0.0])
    if model == "RADIAL":
        return np.array([params[3], params[4], 0.0, 0.0])
    if model == "OPENCV":
        return params[4:8].copy()
    raise ValueError(f"Unsupported COLMAP camera model: {model}")


def load_scene_colmap(model_dir: Path) -> Scene:
    """Import cameras and registered image poses from a COLMAP sparse model; existing 3D points are kept."""
    try:
        reconstruction = pycolmap.Reconstruction(str(model_dir))
    except Exception as e:  # pycolmap raises plain RuntimeError/ValueError from C++
        raise ValueError(f"Cannot read COLMAP model {model_dir}: {e}") from e

    scene = Scene()
    for camera_id, camera in reconstruction.cameras.items():
        scene.intrinsics[camera_id] = Intrinsic(
            camera.width, camera.height, camera.calibration_matrix(), _colmap_distortion(camera)
        )
    for image_id, image in reconstruction.images.items():
        pose_id = None
        if image.has_pose:
            cam_from_world = image.cam_from_world()
            scene.poses[image_id] = Pose(cam_from_world.rotation.matrix(), cam_from_world.translation)
            pose_id = image_id
        scene.views[image_id] = View(image_id, image.camera_id, pose_id, image.name)
    for point3D_id, point3D in reconstruction.points3D.items():
        observations = {}
        for element in point3D.track.elements:
            image = reconstruction.images[element.image_id]
            observations[element.image_id] = Observation(
                np.asarray(image.points2D[element.point2D_idx].xy, dtype=np.float64), element.point2D_idx
            )
        scene.landmarks[point3D_id] = Landmark(np.asarray(point3D.xyz, dtype=np.float64), "colmap", observations)

    logger.info(f"Loaded COLMAP model {model_dir}: {len(scene.views)} views, {len(scene.poses)} poses")
    return scene


# --- regions -----------------------------------------------------------------------------------


def _read_feat(path: Path) -> np.ndarray:
    """Keypoints from a text .feat file (x y [scale orientation] per line)."""
    text = path.read_text()
    if not text.strip():
        return np.empty((0, 2))
    return np.loadtxt(path, ndmin=2)[:, :2]


def _read_desc(path: Path) -> np.ndarray:
    """Descriptors from a binary .desc file: uint64 count, then count rows of uint8 values."""
    raw = path.read_bytes()
    if len(raw) < 8:
        raise ValueError(f"Truncated descriptor file {path}")
    count = int(np.frombuffer(raw[:8], dtype="<u8")[0])
    payload = np.frombuffer(raw[8:], dtype=np.uint8)
    if count == 0:
        return np.empty((0, 0), dtype=np.uint8)
    if len(payload) % count != 0:
        raise ValueError(f"Descriptor file {path}: {len(payload)} bytes do not split into {count} descriptors")
    return payload.reshape(count, -1).copy()


def write_desc(path: Path, des: np.ndarray) -> None:
    """Write uint8 descriptors in the .desc layout read by `load_regions`."""
    des = np.asarray(des, dtype=np.uint8)
    with open(path, "wb") as f:
        f.write(np.array([len(des)], dtype="<u8").tobytes())
        f.write(des.tobytes())


def load_regions(features_dir: Path, view_ids: Iterable[int], describer_types: Iterable[str]) -> RegionStore:
    """Load keypoints and descriptors for every view and describer type.

    Per view and describer type, either `<viewId>.<type>.npz` (arrays `kp`, `des`) or the pair
    `<viewId>.<type>.feat` / `<viewId>.<type>.desc` is read. A missing file is an input error.
    """
    features_dir = Path(features_dir)
    if not features_dir.is_dir():
        raise FileNotFoundError(f"Features directory {features_dir} does not exist")

    store = RegionStore()
    for view_id in sorted(view_ids):
        for describer_type in describer_types:
            stem = features_dir / f"{view_id}.{describer_type}"
            npz_path, feat_path, desc_path = (stem.with_name(stem.name + ext) for ext in (".npz", ".feat", ".desc"))
            try:
                if npz_path.exists():
                    with np.load(npz_path) as data:
                        kp, des = data["kp"], data["des"]
                elif feat_path.exists() and desc_path.exists():
                    kp, des = _read_feat(feat_path), _read_desc(desc_path)
                else:
                    raise FileNotFoundError(f"No {describer_type} regions for view {view_id} in {features_dir}")
                store.add(view_id, describer_type, kp, des)
            except (KeyError, ValueError) as e:
                raise ValueError(f"Invalid {describer_type} regions for view {view_id}: {e}") from e

    logger.info(f"Loaded regions for {len(store.view_ids)} views ({', '.join(sorted(store.describer_types))})")
    return store


# --- matches -----------------------------------------------------------------------------------


def load_matches(
    view_ids: Iterable[int], matches_dir: Path, describer_types: Iterable[str], geometric_model: str = "f"
) -> PairwiseMatches:
    """Read pairwise matches from `*.matches.<model>.txt` files (or `*.matches.txt`).

    Each file is a sequence of blocks::

        I J
        nDescriberTypes
        describerType nMatches
        idxI idxJ
        ...

    Only pairs between the given views and the requested describer types are kept.
    """
    matches_dir = Path(matches_dir)
    files = sorted(matches_dir.glob(f"*.matches.{geometric_model}.txt")) or sorted(matches_dir.glob("*.matches.txt"))
    if not files:
        raise FileNotFoundError(f"Unable to read the matches files in {matches_dir}")

    view_ids, describer_types = set(view_ids), set(describer_types)
    chunks: dict[tuple[int, int], dict[str, list[np.ndarray]]] = {}
    for path in files:
        tokens = path.read_text().split()
        pos = 0
        try:
            while pos < len(tokens):
                i, j, num_types = int(tokens[pos]), int(tokens[pos + 1]), int(tokens[pos + 2])
                pos += 3
                for _ in range(num_types):
                    describer_type, num_matches = tokens[pos], int(tokens[pos + 1])
                    pos += 2
                    block = np.array(tokens[pos : pos + 2 * num_matches], dtype=np.int64)
                    if len(block) != 2 * num_matches:
                        raise ValueError("unexpected end of file")
                    pos += 2 * num_matches
                    if i == j or i not in view_ids or j not in view_ids or describer_type not in describer_types:
                        continue
                    block = block.reshape(-1, 2)
                    pair = make_pair(i, j)
                    if pair != (i, j):
                        block = block[:, ::-1]
                    chunks.setdefault(pair, {}).setdefault(describer_type, []).append(block)
        except (IndexError, ValueError) as e:
            raise ValueError(f"Malformed matches file {path}: {e}") from e

    matches: PairwiseMatches = {
        pair: {describer_type: np.unique(np.vstack(blocks), axis=0) for describer_type, blocks in per_type.items()}
        for pair, per_type in chunks.items()
    }
    logger.info(f"Loaded matches for {len(matches)} pairs from {len(files)} files")
    return matches


# --- point cloud -------------------------------------------------------------------------------


class ReconExporter:
    """Exports landmarks and camera frustums as an ASCII PLY point cloud."""

    def __init__(self, scene: Scene):
        self.scene = scene

    def _camera_vertices_and_edges(self, scale: float) -> tuple[pd.DataFrame, pd.DataFrame]:
        vertices, edges = [], []
        for view in self.scene.iter_views_with_pose():
            frustum = compute_frustum(self.scene, view.view_id, near=scale * 1e-3, far=scale)
            base_idx = len(vertices)
            # apex + image plane corners
            vertices.append(frustum.apex)
            vertices.extend(frustum.corners[4:])
            # center → corners
            edges += [(base_idx, base_idx + i) for i in range(1, 5)]
            # square around image plane
            edges += [(base_idx + i, base_idx + i % 4 + 1) for i in range(1, 5)]
        return (
            pd.DataFrame(np.reshape(vertices, (-1, 3)), columns=["x", "y", "z"]),
            pd.DataFrame(np.reshape(edges, (-1, 2)).astype(np.int64), columns=["vertex1", "vertex2"]),
        )

    def save_ply(self, filename: Path = Path("point_cloud.ply"), camera_scale: float = 0.1) -> None:
        points = pd.DataFrame(
            np.reshape([lm.X for lm in self.scene.landmarks.values()], (-1, 3)), columns=["x", "y", "z"]
        ).assign(red=255, green=255, blue=255)
        cameras, edges = self._camera_vertices_and_edges(camera_scale)
        cameras = cameras.assign(red=255, green=0, blue=0)
        # edge indices offset by number of 3D points
        edges = (edges + len(points)).assign(red=255, green=0, blue=0)
        vertices = pd.concat([points, cameras], ignore_index=True)

        logger.info(f"Writing {len(points)} points and {len(cameras) // 5} cameras to {filename}")
        filename = Path(filename)
        filename.parent.mkdir(exist_ok=True, parents=True)
        with open(filename, "w") as f:
            f.write("ply\n")
            f.write("format ascii 1.0\n")
            f.write(f"element vertex {len(vertices)}\n")
            f.write("property float x\n")
            f.write("property float y\n")
            f.write("property float z\n")
            f.write("property uchar red\n")
            f.write("property uchar green\n")
            f.write("property uchar blue\n")
            f.write(f"element edge {len(edges)}\n")
            f.write("property int vertex1\n")
            f.write("property int vertex2\n")
            f.write("property uchar red\n")
            f.write("property uchar green\n")
            f.write("property uchar blue\n")
            f.write("end_header\n")
            vertices.to_csv(f, sep=" ", header=False, index=False, lineterminator="\n")
            edges.to_csv(f, sep=" ", header=False, index=False, lineterminator="\n")
