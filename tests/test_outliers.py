import numpy as np
import pytest
from conftest import project

from geometry import max_parallax_angle
from outliers import remove_outliers_by_angle, remove_outliers_by_pixel_residual
from utils import Landmark, Observation, Scene, View


def make_landmark(scene, X, view_ids, offsets=None):
    offsets = offsets or {}
    observations = {
        v: Observation(project(scene, v, X)[0] + offsets.get(v, 0.0), feature_id=0) for v in view_ids
    }
    return Landmark(np.asarray(X, dtype=np.float64), "sift", observations)


def landmark_angle(scene, landmark):
    centers = np.array([scene.pose_of(v).center for v in landmark.observations])
    return max_parallax_angle(landmark.X, centers)


def test_angle_threshold_is_inclusive(triangle_scene):
    landmark = make_landmark(triangle_scene, [0.1, 0.2, 5.0], [0, 1])
    triangle_scene.landmarks[0] = landmark
    angle = landmark_angle(triangle_scene, landmark)

    assert remove_outliers_by_angle(triangle_scene, angle) == 0
    assert 0 in triangle_scene.landmarks
    assert remove_outliers_by_angle(triangle_scene, float(np.nextafter(angle, np.inf))) == 1
    assert triangle_scene.landmarks == {}


def test_angle_removal_is_idempotent(triangle_scene):
    triangle_scene.landmarks[0] = make_landmark(triangle_scene, [0.1, 0.2, 5.0], [0, 1, 2])
    # seen from far away: tiny parallax
    triangle_scene.landmarks[1] = make_landmark(triangle_scene, [0.0, 0.0, 500.0], [0, 1])

    assert remove_outliers_by_angle(triangle_scene, 2.0) == 1
    assert list(triangle_scene.landmarks) == [0]
    assert remove_outliers_by_angle(triangle_scene, 2.0) == 0
    assert list(triangle_scene.landmarks) == [0]


def test_observations_without_pose_are_ignored(triangle_scene):
    triangle_scene.landmarks[0] = make_landmark(triangle_scene, [0.1, 0.2, 5.0], [0, 1, 2])
    triangle_scene.views[2] = View(2, intrinsic_id=0, pose_id=None)
    assert remove_outliers_by_angle(triangle_scene, 2.0) == 0

    triangle_scene.views[1] = View(1, intrinsic_id=0, pose_id=None)
    # a single usable ray left
    assert remove_outliers_by_angle(triangle_scene, 2.0) == 1


def test_empty_scene():
    assert remove_outliers_by_angle(Scene()) == 0
    assert remove_outliers_by_pixel_residual(Scene()) == 0


@pytest.mark.parametrize("offset, removed", [(1.0, 0), (10.0, 1)])
def test_pixel_residual_removal(triangle_scene, offset, removed):
    triangle_scene.landmarks[0] = make_landmark(
        triangle_scene, [0.1, 0.2, 5.0], [0, 1, 2], offsets={1: np.array([offset, 0.0])}
    )
    assert remove_outliers_by_pixel_residual(triangle_scene, 4.0) == removed


def test_pixel_residual_point_behind_camera(triangle_scene):
    landmark = make_landmark(triangle_scene, [0.1, 0.2, 5.0], [0, 1])
    triangle_scene.landmarks[0] = Landmark(np.array([0.1, 0.2, -5.0]), "sift", landmark.observations)
    assert remove_outliers_by_pixel_residual(triangle_scene, 4.0) == 1
