import logging

import numpy as np
import pyceres

from utils import Intrinsic, NDArrayFloat, Point3D, Pose

logger = logging.getLogger(__name__)


class PointReprojectionCost(pyceres.CostFunction):
    """Pixel reprojection residual of a 3D point seen by a fixed, calibrated camera.

    Only the point is a parameter block; intrinsics and pose are baked into the cost.
    The observation is expected in undistorted pixel coordinates.
    """

    def __init__(self, cam: Intrinsic, pose: Pose, observed_px: NDArrayFloat):
        pyceres.CostFunction.__init__(self)
        self.set_num_residuals(2)
        self.set_parameter_block_sizes([3])
        self._KR = cam.K @ pose.R
        self._Kt = cam.K @ pose.t
        self._observed = np.asarray(observed_px, dtype=np.float64).ravel()

    def Evaluate(self, parameters, residuals, jacobians):
        x, y, z = self._KR @ parameters[0] + self._Kt
        if z <= 0.0:
            # point moved behind the camera: reject the step
            return False
        residuals[0] = x / z - self._observed[0]
        residuals[1] = y / z - self._observed[1]

        if jacobians is not None and jacobians[0] is not None:
            d_proj = np.array([[1.0 / z, 0.0, -x / z**2], [0.0, 1.0 / z, -y / z**2]])
            jacobians[0][:] = (d_proj @ self._KR).ravel()
        return True


def refine_point(
    X: Point3D,
    cams: list[Intrinsic],
    poses: list[Pose],
    observed_px: NDArrayFloat,
    max_iterations: int = 50,
    huber_scale: float = 1.0,
) -> Point3D:
    """Structure-only bundle adjustment of one point; cameras stay fixed.

    Returns the input point unchanged if the solver does not produce a usable solution.
    """
    point = np.array(X, dtype=np.float64).ravel()

    problem = pyceres.Problem()
    loss = pyceres.HuberLoss(huber_scale)  # Robust loss for outliers
    costs = [PointReprojectionCost(cam, pose, uv) for cam, pose, uv in zip(cams, poses, observed_px)]
    for cost in costs:
        problem.add_residual_block(cost, loss, [point])

    options = pyceres.SolverOptions()
    options.linear_solver_type = pyceres.LinearSolverType.DENSE_QR
    options.minimizer_progress_to_stdout = False
    options.max_num_iterations = max_iterations
    options.num_threads = 1

    summary = pyceres.SolverSummary()
    pyceres.solve(options, problem, summary)
    logger.debug(summary.BriefReport())

    if not summary.IsSolutionUsable() or not np.all(np.isfinite(point)):
        return np.array(X, dtype=np.float64).ravel()
    return point
