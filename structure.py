"""Structure estimation from known camera poses: guided matching, geometric filtering, triangulation."""

import logging
from collections import Counter
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable

import cv2 as cv
import numpy as np
import torch
from numpy.typing import NDArray

from ba import refine_point
from config import StructureConfig
from geometry import (
    depths,
    epipolar_band_mask,
    epipolar_distances,
    essential_from_poses,
    fundamental_from_poses,
    homography_from_poses,
    max_parallax_angle,
    transfer_errors,
    triangulate_dlt,
)
from utils import (
    Intrinsic,
    Landmark,
    NDArrayFloat,
    NDArrayInt,
    Observation,
    Pair,
    PairwiseMatches,
    Pose,
    RegionStore,
    Scene,
    Track,
    TrackBuilder,
    device,
    make_pair,
    parallel_map,
)

logger = logging.getLogger(__name__)


class GeometricModel(Enum):
    """Two-view model used to verify correspondences, built from the known poses."""

    FUNDAMENTAL = "f"
    ESSENTIAL = "e"
    HOMOGRAPHY = "h"


@dataclass
class PosedRegions:
    """Regions of one view for one describer type, with the view's camera and pose."""

    view_id: int
    cam: Intrinsic
    pose: Pose
    kp: NDArrayFloat  # measured pixels (N, 2)
    px: NDArrayFloat  # undistorted pixels (N, 2)
    xn: NDArrayFloat  # normalised camera coordinates (N, 2)
    des: NDArray[Any] | None

    @classmethod
    def from_scene(cls, scene: Scene, regions: RegionStore, view_id: int, describer_type: str) -> "PosedRegions":
        r = regions.regions_for_view(view_id, describer_type)
        cam = scene.intrinsic_of(view_id)
        return cls(view_id, cam, scene.pose_of(view_id), r.kp, cam.undistort(r.kp), cam.normalize(r.kp), r.des)

    def __len__(self) -> int:
        return len(self.kp)


def _fundamental_residuals(a: PosedRegions, b: PosedRegions, matches: NDArrayInt) -> NDArrayFloat:
    F = fundamental_from_poses(a.cam, a.pose, b.cam, b.pose)
    return epipolar_distances(F, a.px[matches[:, 0]], b.px[matches[:, 1]])


def _essential_residuals(a: PosedRegions, b: PosedRegions, matches: NDArrayInt) -> NDArrayFloat:
    E = essential_from_poses(a.pose, b.pose)
    # normalised distance --> pixels via the mean focal length of the pair
    scale = 0.5 * (a.cam.focal + b.cam.focal)
    return scale * epipolar_distances(E, a.xn[matches[:, 0]], b.xn[matches[:, 1]])


def _homography_residuals(a: PosedRegions, b: PosedRegions, matches: NDArrayInt) -> NDArrayFloat:
    H = homography_from_poses(a.cam, a.pose, b.cam, b.pose)
    return transfer_errors(H, a.px[matches[:, 0]], b.px[matches[:, 1]])


ResidualFn = Callable[[PosedRegions, PosedRegions, NDArrayInt], NDArrayFloat]

RESIDUAL_FUNCTIONS: dict[GeometricModel, ResidualFn] = {
    GeometricModel.FUNDAMENTAL: _fundamental_residuals,
    GeometricModel.ESSENTIAL: _essential_residuals,
    GeometricModel.HOMOGRAPHY: _homography_residuals,
}


def _knn_bf(
    des_query: NDArray[Any], des_train: NDArray[Any], mask: NDArray[np.uint8]
) -> tuple[NDArrayInt, NDArrayFloat, NDArrayFloat]:
    best = np.full(len(des_query), -1, dtype=np.int64)
    d1 = np.full(len(des_query), np.inf)
    d2 = np.full(len(des_query), np.inf)

    bf = cv.BFMatcher(cv.NORM_L2, crossCheck=False)
    knn = bf.knnMatch(
        np.ascontiguousarray(des_query, dtype=np.float32),
        np.ascontiguousarray(des_train, dtype=np.float32),
        k=2,
        mask=mask,
    )
    for candidates in knn:
        if not candidates:  # no region inside the epipolar band
            continue
        m = candidates[0]
        best[m.queryIdx], d1[m.queryIdx] = m.trainIdx, m.distance
        if len(candidates) > 1:
            d2[m.queryIdx] = candidates[1].distance
    return best, d1, d2


def _knn_torch(
    des_query: NDArray[Any], des_train: NDArray[Any], mask: NDArray[np.uint8]
) -> tuple[NDArrayInt, NDArrayFloat, NDArrayFloat]:
    query = torch.from_numpy(np.ascontiguousarray(des_query, dtype=np.float32)).to(device)
    train = torch.from_numpy(np.ascontiguousarray(des_train, dtype=np.float32)).to(device)
    allowed = torch.from_numpy(mask).to(device=device, dtype=torch.bool)

    with torch.inference_mode():
        dists = torch.cdist(query, train).masked_fill(~allowed, float("inf"))
        k = min(2, train.shape[0])
        vals, idxs = torch.topk(dists, k, dim=1, largest=False)

    vals = vals.detach().cpu().numpy().astype(np.float64)
    idxs = idxs.detach().cpu().numpy().astype(np.int64)
    d1 = vals[:, 0]
    d2 = vals[:, 1] if k > 1 else np.full(len(d1), np.inf)
    best = np.where(np.isfinite(d1), idxs[:, 0], -1)
    return best, d1, d2


@dataclass
class FilterStats:
    putative: int = 0
    verified: int = 0
    tracks: int = 0
    conflicting_tracks: int = 0


@dataclass
class TriangulationStats:
    tracks: int = 0
    landmarks: int = 0
    rejected: Counter = field(default_factory=Counter)  # reason -> count


class StructureEstimator:
    """Estimate landmarks for a scene whose intrinsics and poses are known.

    The three stages can run in sequence (see `estimate_structure`) or independently:
    - match: geometry-guided descriptor matching per pair,
    - filter: re-verification under the configured two-view model, then track building,
    - triangulate: multi-view DLT per track, with depth/parallax/residual checks.
    """

    def __init__(self, config: StructureConfig | None = None):
        self.config = config or StructureConfig()
        if self.config.matcher_type not in ("bf", "torch"):
            raise ValueError(f"Unknown matcher type: {self.config.matcher_type}")
        self.geometric_model = GeometricModel(self.config.geometric_model)
        self.putative_matches: PairwiseMatches = {}
        self.verified_matches: PairwiseMatches = {}
        self.tracks: list[Track] = []
        self.filter_stats = FilterStats()
        self.triangulation_stats = TriangulationStats()

    def _valid_pairs(self, scene: Scene, pairs: set[Pair]) -> list[Pair]:
        valid = sorted(make_pair(*pair) for pair in pairs if all(scene.is_valid_view(v) for v in pair))
        if len(valid) < len(pairs):
            logger.warning(f"Skipping {len(pairs) - len(valid)} pairs referencing views without intrinsic or pose")
        return valid

    @staticmethod
    def _posed_regions(
        scene: Scene, regions: RegionStore, view_ids: set[int], describer_type: str
    ) -> dict[int, PosedRegions]:
        return {
            view_id: PosedRegions.from_scene(scene, regions, view_id, describer_type)
            for view_id in sorted(view_ids)
            if regions.has_regions(view_id, describer_type)
        }

    # --- match -----------------------------------------------------------------------------------

    def match(self, scene: Scene, pairs: set[Pair], regions: RegionStore) -> PairwiseMatches:
        """Putative correspondences per pair and describer type, guided by the known epipolar geometry."""
        pairs_sorted = self._valid_pairs(scene, pairs)
        matches: PairwiseMatches = {}

        for describer_type in self.config.describer_types:
            posed = self._posed_regions(scene, regions, {v for pair in pairs_sorted for v in pair}, describer_type)

            def match_pair(pair: Pair) -> NDArrayInt:
                i, j = pair
                if i not in posed or j not in posed:
                    return np.empty((0, 2), dtype=np.int64)
                return self._match_pair(posed[i], posed[j])

            results = parallel_map(match_pair, pairs_sorted, self.config.num_workers)
            for pair, pair_matches in zip(pairs_sorted, results):
                if len(pair_matches) > 0:
                    matches.setdefault(pair, {})[describer_type] = pair_matches

        num_matches = sum(len(m) for per_type in matches.values() for m in per_type.values())
        logger.info(f"Putative matches: {num_matches} correspondences over {len(matches)}/{len(pairs_sorted)} pairs")
        self.putative_matches = matches
        return matches

    def _match_pair(self, a: PosedRegions, b: PosedRegions) -> NDArrayInt:
        if len(a) == 0 or len(b) == 0:
            return np.empty((0, 2), dtype=np.int64)
        if a.des is None or b.des is None:
            raise ValueError(f"Descriptors of views {a.view_id}/{b.view_id} were released before matching")

        F = fundamental_from_poses(a.cam, a.pose, b.cam, b.pose)
        mask = epipolar_band_mask(F, a.px, b.px, self.config.match_max_epipolar_error)
        if not mask.any():
            return np.empty((0, 2), dtype=np.int64)

        forward = self._nearest(a.des, b.des, mask)
        if self.config.cross_check:
            backward = self._nearest(b.des, a.des, mask.T)
            mutual = forward >= 0
            mutual[mutual] = backward[forward[mutual]] == np.flatnonzero(mutual)
            forward = np.where(mutual, forward, -1)

        idx_a = np.flatnonzero(forward >= 0)
        return np.column_stack((idx_a, forward[idx_a])).astype(np.int64)

    def _nearest(self, des_query: NDArray[Any], des_train: NDArray[Any], mask: NDArray[np.uint8]) -> NDArrayInt:
        """Best train index per query within the mask after the ratio test; -1 when none."""
        knn = _knn_bf if self.config.matcher_type == "bf" else _knn_torch
        best, d1, d2 = knn(des_query, des_train, mask)
        # a lone candidate (d2 = inf) passes the ratio test
        passed = (best >= 0) & (d1 < self.config.lowe_ratio * d2)
        return np.where(passed, best, -1)

    # --- filter ----------------------------------------------------------------------------------

    def filter(
        self, scene: Scene, pairs: set[Pair], regions: RegionStore, matches: PairwiseMatches | None = None
    ) -> list[Track]:
        """Drop correspondences inconsistent with the known geometry, then merge the rest into tracks."""
        matches = self.putative_matches if matches is None else matches
        residual_fn = RESIDUAL_FUNCTIONS[self.geometric_model]
        pairs_sorted = [pair for pair in self._valid_pairs(scene, pairs) if pair in matches]

        stats = FilterStats()
        verified: PairwiseMatches = {}
        tracks: list[Track] = []
        for describer_type in self.config.describer_types:
            work = [pair for pair in pairs_sorted if len(matches[pair].get(describer_type, ())) > 0]
            posed = self._posed_regions(scene, regions, {v for pair in work for v in pair}, describer_type)

            def verify_pair(pair: Pair) -> NDArrayInt:
                i, j = pair
                pair_matches = np.asarray(matches[pair][describer_type], dtype=np.int64).reshape(-1, 2)
                if i not in posed or j not in posed:
                    return np.empty((0, 2), dtype=np.int64)
                self._check_indices(posed[i], posed[j], pair_matches)
                residuals = residual_fn(posed[i], posed[j], pair_matches)
                return pair_matches[residuals <= self.config.filter_max_error]

            # per-pair verification in parallel; track merging is a serial reduction
            builder = TrackBuilder(describer_type)
            for pair, kept in zip(work, parallel_map(verify_pair, work, self.config.num_workers)):
                stats.putative += len(matches[pair][describer_type])
                stats.verified += len(kept)
                if len(kept) > 0:
                    verified.setdefault(pair, {})[describer_type] = kept
                    builder.add_matches(pair[0], pair[1], kept)

            type_tracks, conflicts = builder.build(self.config.min_track_length)
            stats.conflicting_tracks += conflicts
            tracks.extend(type_tracks)

        stats.tracks = len(tracks)
        logger.info(
            f"Geometric filtering ({self.geometric_model.name.lower()}): "
            f"{stats.verified}/{stats.putative} correspondences kept, {stats.tracks} tracks, "
            f"{stats.conflicting_tracks} conflicting tracks discarded"
        )
        self.verified_matches = verified
        self.tracks = tracks
        self.filter_stats = stats
        return tracks

    @staticmethod
    def _check_indices(a: PosedRegions, b: PosedRegions, matches: NDArrayInt) -> None:
        if len(matches) == 0:
            return
        if matches.min() < 0 or matches[:, 0].max() >= len(a) or matches[:, 1].max() >= len(b):
            raise ValueError(f"Match indices out of range for views {a.view_id} ({len(a)}) / {b.view_id} ({len(b)})")

    # --- triangulate -----------------------------------------------------------------------------

    def triangulate(self, scene: Scene, regions: RegionStore, tracks: list[Track] | None = None) -> list[int]:
        """Triangulate tracks into landmarks added to the scene; returns the new landmark ids."""
        tracks = self.tracks if tracks is None else tracks

        posed: dict[tuple[int, str], PosedRegions] = {}
        for track in tracks:
            for view_id in track.observations:
                key = (view_id, track.describer_type)
                if key not in posed and scene.is_valid_view(view_id) and regions.has_regions(*key):
                    posed[key] = PosedRegions.from_scene(scene, regions, view_id, track.describer_type)

        # one result slot per track, filled independently
        results = parallel_map(lambda track: self._triangulate_track(track, posed), tracks, self.config.num_workers)

        stats = TriangulationStats(tracks=len(tracks))
        landmarks = []
        for landmark, reason in results:
            if landmark is None:
                stats.rejected[reason] += 1
            else:
                landmarks.append(landmark)
        stats.landmarks = len(landmarks)
        added = scene.add_landmarks(landmarks)

        rejected = ", ".join(f"{reason}: {count}" for reason, count in sorted(stats.rejected.items())) or "none"
        logger.info(f"Triangulation: {stats.landmarks} landmarks from {stats.tracks} tracks (rejected: {rejected})")
        self.triangulation_stats = stats
        return added

    def _triangulate_track(
        self, track: Track, posed: dict[tuple[int, str], PosedRegions]
    ) -> tuple[Landmark | None, str]:
        keys = [(view_id, track.describer_type) for view_id in track.observations]
        if any(key not in posed for key in keys):
            return None, "invalid_view"
        if len(keys) < 2:
            return None, "too_short"

        views = [posed[key] for key in keys]
        idxs = list(track.observations.values())
        poses = [view.pose for view in views]
        cams = [view.cam for view in views]
        xn = np.array([view.xn[idx] for view, idx in zip(views, idxs)])
        px = np.array([view.px[idx] for view, idx in zip(views, idxs)])

        X = triangulate_dlt(poses, xn)
        if X is None:
            return None, "degenerate"
        if np.any(depths(X, poses) <= 0):
            return None, "behind_camera"

        if self.config.refine_points:
            X = refine_point(X, cams, poses, px)
            if np.any(depths(X, poses) <= 0):
                return None, "behind_camera"

        if max_parallax_angle(X, np.array([pose.center for pose in poses])) < self.config.min_triangulation_angle:
            return None, "low_parallax"

        if self.config.max_reprojection_error is not None:
            projected = np.array([cam.project(pose.transform(X))[0] for cam, pose in zip(cams, poses)])
            if np.linalg.norm(projected - px, axis=1).max() > self.config.max_reprojection_error:
                return None, "high_residual"

        observations = {
            view.view_id: Observation(view.kp[idx].copy(), int(idx)) for view, idx in zip(views, idxs)
        }
        return Landmark(X, track.describer_type, observations), ""


def estimate_structure(
    scene: Scene, pairs: set[Pair], regions: RegionStore, config: StructureConfig | None = None
) -> StructureEstimator:
    """Run match, filter and triangulate in sequence; landmarks are added to the scene.

    Descriptors are released right after matching, only keypoint positions are needed afterwards.
    """
    estimator = StructureEstimator(config)
    estimator.match(scene, pairs, regions)
    regions.clear_descriptors()
    estimator.filter(scene, pairs, regions)
    estimator.triangulate(scene, regions)
    return estimator
