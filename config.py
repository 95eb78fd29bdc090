"""Configuration for structure estimation from known poses."""

import os
from dataclasses import dataclass, field
from typing import Literal


@dataclass
class StructureConfig:
    """Configuration for the structure-from-known-poses pipeline.

    Modify the default values here for experimentation.
    Command-line overrides: see `sfm.py --help`
    """

    # Regions
    describer_types: tuple[str, ...] = ("sift",)
    """Describer types (region channels) to match and triangulate"""

    # Guided matching
    matcher_type: Literal["bf", "torch"] = "bf"
    """Descriptor search backend: 'bf' (OpenCV brute-force) or 'torch' (masked cdist on GPU if available)"""

    lowe_ratio: float = 0.8
    """Lowe's ratio test threshold between best and second best candidate"""

    cross_check: bool = True
    """Keep only mutual nearest neighbours"""

    match_max_epipolar_error: float = 4.0
    """Maximum symmetric epipolar distance (px) for a region pair to be a match candidate"""

    # Geometric filtering
    geometric_model: Literal["f", "e", "h"] = "f"
    """Model used to re-verify matches: 'f' fundamental, 'e' essential, 'h' homography"""

    filter_max_error: float = 4.0
    """Maximum residual (px) under the geometric model for a match to survive filtering"""

    min_track_length: int = 2
    """Minimum number of views in a track"""

    # Triangulation
    min_triangulation_angle: float = 2.0
    """Tracks whose max parallax angle (deg) is below this are rejected"""

    max_reprojection_error: float | None = 4.0
    """Tracks with a larger reprojection error (px) are rejected; None disables the check"""

    refine_points: bool = False
    """Refine each triangulated point with pyceres (cameras fixed)"""

    # Outlier rejection
    outlier_angle: float = 2.0
    """Landmarks whose max parallax angle (deg) is below this are removed after triangulation"""

    # Frustums
    frustum_near: float | None = None
    """Near plane depth; None derives it from existing landmarks or the camera layout"""

    frustum_far: float | None = None
    """Far plane depth; None derives it from existing landmarks or the camera layout"""

    far_baseline_ratio: float = 10.0
    """Heuristic far depth as a multiple of the largest camera baseline"""

    near_far_ratio: float = 0.001
    """Heuristic near depth as a fraction of the far depth"""

    depth_margin: float = 0.1
    """Relative margin around landmark depths when bounds come from existing structure"""

    # Scheduling
    num_workers: int = field(default_factory=lambda: os.cpu_count() or 1)
    """Thread pool size for per-pair and per-track work; <= 1 runs serially"""
