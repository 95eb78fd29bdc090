import numpy as np
import pytest

from config import StructureConfig
from utils import Intrinsic, Pose, RegionStore, Scene, View

K = np.array([[500.0, 0.0, 320.0], [0.0, 500.0, 240.0], [0.0, 0.0, 1.0]])
WIDTH, HEIGHT = 640, 480
TARGET = np.array([0.0, 0.0, 5.0])


def look_at(center, target=TARGET) -> Pose:
    """Camera at center with its optical axis through target (image y axis along world +y)."""
    center = np.asarray(center, dtype=np.float64)
    z = np.asarray(target, dtype=np.float64) - center
    z /= np.linalg.norm(z)
    x = np.cross([0.0, 1.0, 0.0], z)
    x /= np.linalg.norm(x)
    y = np.cross(z, x)
    return Pose.from_center(np.vstack((x, y, z)), center)


def make_scene(poses: list[Pose], dist=None) -> Scene:
    """One shared intrinsic; view i uses pose i."""
    scene = Scene()
    scene.intrinsics[0] = Intrinsic(WIDTH, HEIGHT, K, np.zeros(4) if dist is None else dist)
    for i, pose in enumerate(poses):
        scene.poses[i] = pose
        scene.views[i] = View(i, intrinsic_id=0, pose_id=i, path=f"img_{i:03d}.jpg")
    return scene


def project(scene: Scene, view_id: int, X) -> np.ndarray:
    cam, pose = scene.intrinsic_of(view_id), scene.pose_of(view_id)
    return cam.project(pose.transform(X))


def make_regions(
    scene: Scene,
    points: np.ndarray,
    rng: np.random.Generator,
    describer_type: str = "sift",
    num_distractors: int = 0,
    descriptor_noise: float = 0.01,
) -> RegionStore:
    """Regions where feature i of every view observes points[i]; distractors are appended after them."""
    points = np.asarray(points, dtype=np.float64).reshape(-1, 3)
    base = rng.normal(size=(len(points), 128)).astype(np.float32)
    store = RegionStore()
    for view_id in sorted(scene.views):
        kp = project(scene, view_id, points)
        des = base + descriptor_noise * rng.normal(size=base.shape).astype(np.float32)
        if num_distractors:
            kp = np.vstack((kp, rng.uniform([0, 0], [WIDTH, HEIGHT], size=(num_distractors, 2))))
            des = np.vstack((des, rng.normal(size=(num_distractors, 128)).astype(np.float32)))
        store.add(view_id, describer_type, kp, des)
    return store


@pytest.fixture
def rng():
    return np.random.default_rng(7)


@pytest.fixture
def config():
    return StructureConfig(num_workers=1)


@pytest.fixture
def triangle_scene():
    """Three cameras on a small triangle baseline, all looking at TARGET."""
    return make_scene([look_at([-1.0, 0.0, 0.0]), look_at([1.0, 0.0, 0.0]), look_at([0.0, -1.0, 0.0])])


@pytest.fixture
def cloud(rng):
    """20 points scattered around TARGET, visible in every camera of triangle_scene."""
    return TARGET + rng.uniform(-0.8, 0.8, size=(20, 3))
