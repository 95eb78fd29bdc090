"""Post-triangulation landmark rejection."""

import logging

import numpy as np

from geometry import max_parallax_angle
from utils import Scene

logger = logging.getLogger(__name__)


def remove_outliers_by_angle(scene: Scene, threshold_deg: float = 2.0) -> int:
    """Remove landmarks whose largest parallax angle is below threshold_deg.

    The angle is measured at the landmark between rays to the centers of its observing cameras.
    Observations in views without a valid pose are ignored; a landmark left with fewer than two
    usable rays is removed as well. A landmark exactly at the threshold is kept.
    Returns the number of landmarks removed.
    """
    to_remove = []
    for landmark_id, landmark in scene.landmarks.items():
        centers = [scene.pose_of(view_id).center for view_id in landmark.observations if scene.is_valid_view(view_id)]
        if len(centers) < 2 or max_parallax_angle(landmark.X, np.array(centers)) < threshold_deg:
            to_remove.append(landmark_id)

    for landmark_id in to_remove:
        del scene.landmarks[landmark_id]
    logger.info(f"Angular outlier rejection ({threshold_deg} deg): removed {len(to_remove)} landmarks")
    return len(to_remove)


def remove_outliers_by_pixel_residual(scene: Scene, threshold_px: float = 4.0) -> int:
    """Remove landmarks with any observation reprojecting farther than threshold_px from its measurement.

    Observations in views without a valid pose are ignored; landmarks left with fewer than two
    usable observations are removed. Returns the number of landmarks removed.
    """
    to_remove = []
    for landmark_id, landmark in scene.landmarks.items():
        residuals = []
        for view_id, obs in landmark.observations.items():
            if not scene.is_valid_view(view_id):
                continue
            cam, pose = scene.intrinsic_of(view_id), scene.pose_of(view_id)
            x_cam = pose.transform(landmark.X)
            if x_cam[0, 2] <= 0:
                residuals.append(np.inf)
                continue
            residuals.append(float(np.linalg.norm(cam.project(x_cam)[0] - cam.undistort(obs.x)[0])))
        if len(residuals) < 2 or max(residuals) > threshold_px:
            to_remove.append(landmark_id)

    for landmark_id in to_remove:
        del scene.landmarks[landmark_id]
    logger.info(f"Residual outlier rejection ({threshold_px} px): removed {len(to_remove)} landmarks")
    return len(to_remove)
