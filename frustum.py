"""Camera frustums and candidate pair selection."""

import logging
from dataclasses import dataclass
from itertools import chain

import numpy as np

from config import StructureConfig
from utils import NDArrayFloat, Pair, PairwiseMatches, Point3D, Scene, make_pair, parallel_map

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Frustum:
    """Truncated viewing pyramid of one camera in world coordinates.

    corners[:4] lie on the near plane and corners[4:] on the far plane, both in image corner order
    (top-left, top-right, bottom-right, bottom-left).
    """

    view_id: int
    apex: Point3D
    corners: NDArrayFloat  # (8, 3)

    @property
    def sphere_center(self) -> Point3D:
        return self.corners.mean(axis=0)

    @property
    def sphere_radius(self) -> float:
        return float(np.linalg.norm(self.corners - self.sphere_center, axis=1).max())

    def face_normals(self) -> NDArrayFloat:
        near, far = self.corners[:4], self.corners[4:]
        normals = [
            np.cross(near[1] - near[0], near[3] - near[0]),
            np.cross(far[1] - far[0], far[3] - far[0]),
        ]
        for i in range(4):
            k = (i + 1) % 4
            normals.append(np.cross(near[k] - near[i], far[i] - near[i]))
        return np.asarray(normals)

    def edge_directions(self) -> NDArrayFloat:
        near, far = self.corners[:4], self.corners[4:]
        edges = [near[(i + 1) % 4] - near[i] for i in range(4)]
        edges += [far[i] - near[i] for i in range(4)]
        return np.asarray(edges)


def compute_frustum(scene: Scene, view_id: int, near: float, far: float) -> Frustum:
    """Frustum of a posed view between the near and far depths."""
    if not 0.0 < near < far:
        raise ValueError(f"Frustum bounds must satisfy 0 < near < far, got near={near}, far={far}")
    if not scene.is_valid_view(view_id):
        raise ValueError(f"View {view_id} has no valid intrinsic and pose")

    cam = scene.intrinsic_of(view_id)
    pose = scene.pose_of(view_id)
    image_corners = np.array([[0.0, 0.0], [cam.width, 0.0], [cam.width, cam.height], [0.0, cam.height]])
    rays = np.hstack((cam.normalize(image_corners), np.ones((4, 1))))  # camera frame, z = 1
    corners_cam = np.vstack((rays * near, rays * far))
    # Camera --> World: Xw = Rᵀ (Xc − t)
    corners_world = (corners_cam - pose.t) @ pose.R
    return Frustum(view_id, pose.center, corners_world)


def intersects(a: Frustum, b: Frustum) -> bool:
    """Volumetric overlap test: bounding spheres first, then the separating axis theorem."""
    if np.linalg.norm(a.sphere_center - b.sphere_center) > a.sphere_radius + b.sphere_radius:
        return False

    edges_a, edges_b = a.edge_directions(), b.edge_directions()
    cross_axes = np.cross(edges_a[:, None, :], edges_b[None, :, :]).reshape(-1, 3)
    axes = np.vstack((a.face_normals(), b.face_normals(), cross_axes))
    norms = np.linalg.norm(axes, axis=1)
    axes = axes[norms > 1e-12 * norms.max()]

    proj_a = a.corners @ axes.T  # (8, n_axes)
    proj_b = b.corners @ axes.T
    separated = (proj_a.max(axis=0) < proj_b.min(axis=0)) | (proj_b.max(axis=0) < proj_a.min(axis=0))
    return not bool(separated.any())


def frustum_depth_bounds(scene: Scene, config: StructureConfig) -> dict[int, tuple[float, float]]:
    """Near/far depth per valid view.

    Configured values win. Otherwise the depths of landmarks already observed by the view are used,
    and views without landmarks fall back to a multiple of the largest camera baseline.
    """
    view_ids = sorted(scene.valid_views())
    if not view_ids:
        return {}

    centers = np.array([scene.pose_of(view_id).center for view_id in view_ids])
    baseline = float(np.linalg.norm(centers[:, None] - centers[None, :], axis=2).max())
    far_default = config.far_baseline_ratio * (baseline if baseline > 0 else 1.0)
    near_default = config.near_far_ratio * far_default

    observed: dict[int, list[float]] = {}
    for landmark in scene.landmarks.values():
        for view_id in landmark.observations:
            if scene.is_valid_view(view_id):
                depth = scene.pose_of(view_id).transform(landmark.X)[0, 2]
                if depth > 0:
                    observed.setdefault(view_id, []).append(depth)

    bounds = {}
    for view_id in view_ids:
        near, far = near_default, far_default
        if view_id in observed:
            near = min(observed[view_id]) * (1.0 - config.depth_margin)
            far = max(observed[view_id]) * (1.0 + config.depth_margin)
            near = max(near, config.near_far_ratio * far)
        if config.frustum_near is not None:
            near = config.frustum_near
        if config.frustum_far is not None:
            far = config.frustum_far
        bounds[view_id] = (near, far)
    return bounds


def frustum_intersection_pairs(scene: Scene, config: StructureConfig) -> set[Pair]:
    """Pairs of valid views whose frustums overlap."""
    view_ids = sorted(scene.valid_views())
    bounds = frustum_depth_bounds(scene, config)
    frustums = [compute_frustum(scene, view_id, *bounds[view_id]) for view_id in view_ids]

    def intersecting_row(i: int) -> list[Pair]:
        return [
            make_pair(frustums[i].view_id, frustums[j].view_id)
            for j in range(i + 1, len(frustums))
            if intersects(frustums[i], frustums[j])
        ]

    rows = parallel_map(intersecting_row, range(len(frustums)), config.num_workers)
    pairs = set(chain.from_iterable(rows))
    logger.info(f"Frustum intersection: {len(pairs)} pairs out of {len(view_ids)} posed views")
    return pairs


def pairs_from_matches(scene: Scene, matches: PairwiseMatches) -> set[Pair]:
    """Pairs with at least one correspondence, restricted to views with a valid intrinsic and pose."""
    valid_views = scene.valid_views()
    pairs = set()
    for (i, j), per_type in matches.items():
        if i == j or not any(len(m) > 0 for m in per_type.values()):
            continue
        if i in valid_views and j in valid_views:
            pairs.add(make_pair(i, j))
    logger.info(f"Precomputed matches: {len(pairs)} pairs between valid views (out of {len(matches)})")
    return pairs


def select_pairs(
    scene: Scene, matches: PairwiseMatches | None = None, config: StructureConfig | None = None
) -> set[Pair]:
    """Candidate pairs: frustum intersection, or the pairs of precomputed matches when supplied."""
    config = config or StructureConfig()
    pairs = frustum_intersection_pairs(scene, config) if matches is None else pairs_from_matches(scene, matches)
    if not pairs:
        logger.warning("No candidate pairs: the reconstruction will contain no landmarks")
    return pairs
