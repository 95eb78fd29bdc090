"""Multi-view geometry for cameras with known poses."""

import numpy as np
from numpy.typing import NDArray

from utils import Intrinsic, NDArrayFloat, Point3D, Pose


def skew(v: NDArrayFloat) -> NDArrayFloat:
    """Cross-product matrix [v]x."""
    x, y, z = np.asarray(v, dtype=np.float64).ravel()
    return np.array([[0.0, -z, y], [z, 0.0, -x], [-y, x, 0.0]])


def relative_pose(pose_a: Pose, pose_b: Pose) -> tuple[NDArrayFloat, NDArrayFloat]:
    """(R_ba, t_ba) such that x_b = R_ba @ x_a + t_ba for camera-frame points."""
    R_ba = pose_b.R @ pose_a.R.T
    t_ba = pose_b.t - R_ba @ pose_a.t
    return R_ba, t_ba


def essential_from_poses(pose_a: Pose, pose_b: Pose) -> NDArrayFloat:
    """E with x_b^T E x_a = 0 for normalised coordinates."""
    R_ba, t_ba = relative_pose(pose_a, pose_b)
    return skew(t_ba) @ R_ba


def fundamental_from_poses(cam_a: Intrinsic, pose_a: Pose, cam_b: Intrinsic, pose_b: Pose) -> NDArrayFloat:
    """F with x_b^T F x_a = 0 for undistorted pixel coordinates."""
    E = essential_from_poses(pose_a, pose_b)
    return np.linalg.inv(cam_b.K).T @ E @ np.linalg.inv(cam_a.K)


def homography_from_poses(cam_a: Intrinsic, pose_a: Pose, cam_b: Intrinsic, pose_b: Pose) -> NDArrayFloat:
    """Infinite homography K_b R_ba K_a^-1 (exact for pure rotation, approximate for distant scenes)."""
    R_ba, _ = relative_pose(pose_a, pose_b)
    return cam_b.K @ R_ba @ np.linalg.inv(cam_a.K)


def _homogeneous(pts: NDArrayFloat) -> NDArrayFloat:
    pts = np.asarray(pts, dtype=np.float64).reshape(-1, 2)
    return np.hstack((pts, np.ones((len(pts), 1))))


def epipolar_band_mask(
    F: NDArrayFloat,
    pts_a: NDArrayFloat,
    pts_b: NDArrayFloat,
    max_error: float,
    max_chunk_elements: int = 1 << 22,
) -> NDArray[np.uint8]:
    """(N, M) uint8 mask, 1 where the symmetric epipolar distance of (pts_a[i], pts_b[j]) is <= max_error.

    The symmetric distance is the larger of the two one-sided point-to-line distances, so the test is
    |x_b^T F x_a| <= max_error * min(|l_b[i]|, |l_a[j]|). Rows are processed in chunks of at most
    max_chunk_elements values, in float32, reusing the same two scratch buffers.
    """
    F32 = np.asarray(F, dtype=np.float32)
    xa = _homogeneous(pts_a).astype(np.float32)
    xb = _homogeneous(pts_b).astype(np.float32)
    n, m = len(xa), len(xb)
    mask = np.zeros((n, m), dtype=np.uint8)
    if n == 0 or m == 0:
        return mask

    lines_b = xa @ F32.T  # epipolar lines in image b, (N, 3)
    lines_a = xb @ F32  # epipolar lines in image a, (M, 3)
    norm_b = np.hypot(lines_b[:, 0], lines_b[:, 1])
    norm_a = np.hypot(lines_a[:, 0], lines_a[:, 1])
    xb_t = np.ascontiguousarray(xb.T)

    rows = max(1, min(n, max_chunk_elements // m))
    algebraic = np.empty((rows, m), dtype=np.float32)
    threshold = np.empty((rows, m), dtype=np.float32)
    for start in range(0, n, rows):
        stop = min(start + rows, n)
        alg, thr = algebraic[: stop - start], threshold[: stop - start]
        np.matmul(lines_b[start:stop], xb_t, out=alg)
        np.abs(alg, out=alg)
        np.minimum(norm_b[start:stop, None], norm_a[None, :], out=thr)
        thr *= max_error
        np.less_equal(alg, thr, out=mask[start:stop])
    return mask


def epipolar_distances(F: NDArrayFloat, pts_a: NDArrayFloat, pts_b: NDArrayFloat) -> NDArrayFloat:
    """(N,) symmetric point-to-epipolar-line distance for corresponding rows of pts_a and pts_b."""
    xa, xb = _homogeneous(pts_a), _homogeneous(pts_b)
    lines_b = xa @ F.T
    lines_a = xb @ F
    algebraic = np.abs(np.sum(lines_b * xb, axis=1))
    d_b = algebraic / (np.hypot(lines_b[:, 0], lines_b[:, 1]) + 1e-12)
    d_a = algebraic / (np.hypot(lines_a[:, 0], lines_a[:, 1]) + 1e-12)
    return np.maximum(d_a, d_b)


def transfer_errors(H: NDArrayFloat, pts_a: NDArrayFloat, pts_b: NDArrayFloat) -> NDArrayFloat:
    """(N,) symmetric transfer error under homography H (a -> b)."""
    xa, xb = _homogeneous(pts_a), _homogeneous(pts_b)
    with np.errstate(divide="ignore", invalid="ignore"):
        ab = xa @ H.T
        ba = xb @ np.linalg.inv(H).T
        err_b = np.linalg.norm(ab[:, :2] / ab[:, 2:3] - xb[:, :2], axis=1)
        err_a = np.linalg.norm(ba[:, :2] / ba[:, 2:3] - xa[:, :2], axis=1)
    errors = np.maximum(err_a, err_b)
    return np.where(np.isfinite(errors), errors, np.inf)


def triangulate_dlt(poses: list[Pose], xs_norm: NDArrayFloat, eps: float = 1e-10) -> Point3D | None:
    """Linear multi-view triangulation from normalised image coordinates.

    Each view contributes the rows x * P[2] - P[0] and y * P[2] - P[1] of A X = 0 with P = [R | t].
    Returns None when the homogeneous solution is degenerate (parallel rays, point at infinity).
    """
    xs_norm = np.asarray(xs_norm, dtype=np.float64).reshape(-1, 2)
    if len(poses) < 2 or len(poses) != len(xs_norm):
        return None

    rows = []
    for pose, (x, y) in zip(poses, xs_norm):
        P = pose.pose_matrix
        rows.append(x * P[2] - P[0])
        rows.append(y * P[2] - P[1])
    A = np.asarray(rows)
    # row scaling keeps every view's contribution comparable
    A /= np.linalg.norm(A, axis=1, keepdims=True) + 1e-15

    try:
        _, _, Vt = np.linalg.svd(A)
    except np.linalg.LinAlgError:
        return None
    X_h = Vt[-1]
    if not np.all(np.isfinite(X_h)) or abs(X_h[3]) < eps * np.linalg.norm(X_h[:3]):
        return None
    return X_h[:3] / X_h[3]


def max_parallax_angle(X: Point3D, centers: NDArrayFloat) -> float:
    """Largest angle (deg) at X between the rays to any two of the given camera centers.

    Fewer than two usable rays yields 0.
    """
    rays = np.asarray(centers, dtype=np.float64).reshape(-1, 3) - np.asarray(X, dtype=np.float64).reshape(1, 3)
    norms = np.linalg.norm(rays, axis=1)
    rays = rays[norms > 0] / norms[norms > 0, None]
    if len(rays) < 2:
        return 0.0
    cos = np.clip(rays @ rays.T, -1.0, 1.0)
    return float(np.degrees(np.arccos(cos.min())))


def depths(X: Point3D, poses: list[Pose]) -> NDArrayFloat:
    """Depth (camera z) of X in each pose."""
    return np.array([pose.transform(X)[0, 2] for pose in poses])
