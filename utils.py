from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Annotated, Any, Callable, Iterable, Iterator, Literal, TypeVar

import cv2 as cv
import numpy as np
import torch
from numpy.typing import NDArray

device = torch.device("cuda" if torch.cuda.is_available() else "mps" if torch.backends.mps.is_available() else "cpu")

NDArrayFloat = NDArray[np.floating[Any]]
NDArrayInt = NDArray[np.integer[Any]]
Point3D = Annotated[NDArrayFloat, Literal[3]]
KPKey = tuple[int, int]  # Keypoint observation (view_id, region_idx)
Pair = tuple[int, int]  # (view_id_a, view_id_b) with view_id_a < view_id_b
PairwiseMatches = dict[Pair, dict[str, NDArrayInt]]  # pair -> describer type -> (M, 2) region indices

_T = TypeVar("_T")
_R = TypeVar("_R")


def make_pair(i: int, j: int) -> Pair:
    """Order-normalised pair of distinct view ids."""
    if i == j:
        raise ValueError(f"A pair needs two distinct views, got ({i}, {j})")
    return (i, j) if i < j else (j, i)


def parallel_map(fn: Callable[[_T], _R], items: Iterable[_T], num_workers: int) -> list[_R]:
    """Map fn over items, keeping input order; runs serially when num_workers <= 1."""
    items = list(items)
    if num_workers <= 1 or len(items) <= 1:
        return [fn(item) for item in items]
    with ThreadPoolExecutor(max_workers=num_workers) as executor:
        return list(executor.map(fn, items))


@dataclass
class Intrinsic:
    """Pinhole camera with OpenCV distortion coefficients (k1, k2, p1, p2[, k3])."""

    width: int
    height: int
    K: NDArrayFloat
    dist: NDArrayFloat = field(default_factory=lambda: np.zeros(4))

    def __post_init__(self):
        self.K = np.asarray(self.K, dtype=np.float64).reshape(3, 3)
        self.dist = np.asarray(self.dist, dtype=np.float64).ravel()

    @property
    def focal(self) -> float:
        return 0.5 * (self.K[0, 0] + self.K[1, 1])

    @property
    def has_distortion(self) -> bool:
        return bool(np.any(self.dist))

    def normalize(self, px: NDArrayFloat) -> NDArrayFloat:
        """Pixel coordinates (N, 2) -> undistorted normalised camera coordinates (N, 2)."""
        px = np.asarray(px, dtype=np.float64).reshape(-1, 2)
        if len(px) == 0:
            return np.empty((0, 2))
        if not self.has_distortion:
            xn = np.hstack((px, np.ones((len(px), 1)))) @ np.linalg.inv(self.K).T
            return xn[:, :2] / xn[:, 2:3]
        return cv.undistortPoints(px.reshape(-1, 1, 2), self.K, self.dist).reshape(-1, 2)

    def undistort(self, px: NDArrayFloat) -> NDArrayFloat:
        """Pixel coordinates (N, 2) -> undistorted pixel coordinates of the same camera."""
        px = np.asarray(px, dtype=np.float64).reshape(-1, 2)
        if len(px) == 0 or not self.has_distortion:
            return px.copy()
        return cv.undistortPoints(px.reshape(-1, 1, 2), self.K, self.dist, P=self.K).reshape(-1, 2)

    def project(self, x_cam: NDArrayFloat) -> NDArrayFloat:
        """Camera-frame points (N, 3) -> undistorted pixel coordinates (N, 2)."""
        uvw = np.asarray(x_cam, dtype=np.float64).reshape(-1, 3) @ self.K.T
        return uvw[:, :2] / uvw[:, 2:3]


@dataclass
class Pose:
    """Rigid camera placement; x_cam = R @ X_world + t (camera-from-world)."""

    R: NDArrayFloat
    t: NDArrayFloat

    def __post_init__(self):
        self.R = np.asarray(self.R, dtype=np.float64).reshape(3, 3)
        self.t = np.asarray(self.t, dtype=np.float64).reshape(3)

    @classmethod
    def from_center(cls, R: NDArrayFloat, center: NDArrayFloat) -> "Pose":
        R = np.asarray(R, dtype=np.float64).reshape(3, 3)
        return cls(R, -R @ np.asarray(center, dtype=np.float64).reshape(3))

    @property
    def center(self) -> Point3D:
        # World --> Camera: Xc = R Xw + t; camera center Xc=0 --> Xw = -Rᵀ t
        return -self.R.T @ self.t

    @property
    def pose_matrix(self) -> NDArrayFloat:
        return np.hstack((self.R, self.t[:, None]))

    def transform(self, X: NDArrayFloat) -> NDArrayFloat:
        """World points (N, 3) -> camera-frame points (N, 3)."""
        return np.asarray(X, dtype=np.float64).reshape(-1, 3) @ self.R.T + self.t


@dataclass(frozen=True)
class View:
    view_id: int
    intrinsic_id: int | None = None
    pose_id: int | None = None
    path: str | None = None


@dataclass(frozen=True)
class Observation:
    x: NDArrayFloat  # measured pixel position (2,)
    feature_id: int


@dataclass(frozen=True)
class Landmark:
    """Triangulated 3D point with the observations supporting it."""

    X: Point3D
    describer_type: str
    observations: dict[int, Observation]  # view_id -> observation


@dataclass
class Scene:
    """Views, calibration and poses (read-only for the pipeline) plus the landmark container."""

    views: dict[int, View] = field(default_factory=dict)
    intrinsics: dict[int, Intrinsic] = field(default_factory=dict)
    poses: dict[int, Pose] = field(default_factory=dict)
    landmarks: dict[int, Landmark] = field(default_factory=dict)

    def is_valid_view(self, view_id: int) -> bool:
        """True if the view has both an intrinsic and a pose defined in the scene."""
        view = self.views.get(view_id)
        if view is None:
            return False
        return view.intrinsic_id in self.intrinsics and view.pose_id in self.poses

    def valid_views(self) -> set[int]:
        return {view_id for view_id in self.views if self.is_valid_view(view_id)}

    def intrinsic_of(self, view_id: int) -> Intrinsic:
        return self.intrinsics[self.views[view_id].intrinsic_id]  # ty:ignore[invalid-argument-type]

    def pose_of(self, view_id: int) -> Pose:
        return self.poses[self.views[view_id].pose_id]  # ty:ignore[invalid-argument-type]

    def iter_views_with_pose(self) -> Iterator[View]:
        """Yield views with a valid intrinsic and pose, by ascending id."""
        yield from (self.views[view_id] for view_id in sorted(self.valid_views()))

    def add_landmarks(self, landmarks: Iterable[Landmark]) -> list[int]:
        """Append landmarks under fresh consecutive ids; returns the ids used."""
        next_id = max(self.landmarks, default=-1) + 1
        added = []
        for landmark in landmarks:
            self.landmarks[next_id] = landmark
            added.append(next_id)
            next_id += 1
        return added

    def clear_structure(self) -> None:
        self.landmarks.clear()


@dataclass
class Regions:
    """Keypoints (N, 2) and optional descriptors (N, D) of one view for one describer type."""

    kp: NDArrayFloat
    des: NDArray[Any] | None = None

    def __len__(self) -> int:
        return len(self.kp)


class RegionStore:
    """Read-only access to per-view regions, keyed by (view_id, describer_type)."""

    def __init__(self):
        self._store: dict[tuple[int, str], Regions] = {}

    def add(self, view_id: int, describer_type: str, kp: NDArray[Any], des: NDArray[Any] | None = None) -> None:
        kp = np.asarray(kp, dtype=np.float64).reshape(-1, 2)
        if des is not None and len(des) != len(kp):
            raise ValueError(
                f"View {view_id} ({describer_type}): {len(kp)} keypoints but {len(des)} descriptors"
            )
        self._store[(view_id, describer_type)] = Regions(kp, des)

    def has_regions(self, view_id: int, describer_type: str) -> bool:
        return (view_id, describer_type) in self._store

    def regions_for_view(self, view_id: int, describer_type: str) -> Regions:
        try:
            return self._store[(view_id, describer_type)]
        except KeyError:
            raise KeyError(f"No {describer_type} regions for view {view_id}") from None

    def clear_descriptors(self) -> None:
        """Drop descriptor payloads; keypoint positions stay available for triangulation."""
        for regions in self._store.values():
            regions.des = None

    @property
    def view_ids(self) -> set[int]:
        return {view_id for view_id, _ in self._store}

    @property
    def describer_types(self) -> set[str]:
        return {describer_type for _, describer_type in self._store}

    @property
    def size(self) -> int:
        return len(self._store)


@dataclass(frozen=True)
class Track:
    describer_type: str
    observations: dict[int, int]  # view_id -> region index, ordered by view id

    def __len__(self) -> int:
        return len(self.observations)


class TrackBuilder:
    """Union-find over keypoint observations (view_id, region_idx) of a single describer type.

    Every match joins the two keypoints into the same track. A connected component that ends up
    with two different regions in one view cannot be a single 3D point and is discarded.
    """

    def __init__(self, describer_type: str):
        self.describer_type = describer_type
        self._parent: dict[KPKey, KPKey] = {}
        self._rank: dict[KPKey, int] = {}

    def _find(self, kp_key: KPKey) -> KPKey:
        if kp_key not in self._parent:
            self._parent[kp_key] = kp_key
            self._rank[kp_key] = 0
            return kp_key
        root = kp_key
        while self._parent[root] != root:
            root = self._parent[root]
        # path compression
        while self._parent[kp_key] != root:
            next_key = self._parent[kp_key]
            self._parent[kp_key] = root
            kp_key = next_key
        return root

    def union(self, kp_a: KPKey, kp_b: KPKey) -> None:
        root_a, root_b = self._find(kp_a), self._find(kp_b)
        if root_a == root_b:
            return
        if self._rank[root_a] < self._rank[root_b]:
            root_a, root_b = root_b, root_a
        self._parent[root_b] = root_a
        if self._rank[root_a] == self._rank[root_b]:
            self._rank[root_a] += 1

    def add_matches(self, view_a: int, view_b: int, matches: NDArrayInt) -> None:
        """Register (M, 2) region index matches between view_a and view_b."""
        for idx_a, idx_b in np.asarray(matches, dtype=np.int64).reshape(-1, 2):
            self.union((view_a, int(idx_a)), (view_b, int(idx_b)))

    def build(self, min_length: int = 2) -> tuple[list[Track], int]:
        """Returns the consistent tracks and the number of conflicting components dropped."""
        components: dict[KPKey, list[KPKey]] = {}
        for kp_key in self._parent:
            components.setdefault(self._find(kp_key), []).append(kp_key)

        tracks, conflicts = [], 0
        for kp_keys in components.values():
            observations: dict[int, int] = {}
            consistent = True
            for view_id, region_idx in sorted(kp_keys):
                if view_id in observations:
                    consistent = False
                    break
                observations[view_id] = region_idx
            if not consistent:
                conflicts += 1
                continue
            if len(observations) >= min_length:
                tracks.append(Track(self.describer_type, observations))

        # deterministic order: by first (view_id, region_idx) of each track
        tracks.sort(key=lambda track: next(iter(track.observations.items())))
        return tracks, conflicts
