"""
Tag Pose Estimation Module

Recovers the 3D pose of a square tag relative to the camera from its four
image corners.

Coordinate frames:
- Camera frame: X-right, Y-down, Z-forward (OpenCV convention)
- Tag frame: origin at the tag center, X-right, Y-down across the printed
  tag, Z pointing into the tag (away from a camera that sees it)

Corner order matters: corner i of a detection must be the image of object
point i from tag_object_points(). A consistent but wrong order still
produces a pose, just a wrong one.
"""

import logging
from dataclasses import dataclass
from typing import Optional, Tuple

import cv2
import numpy as np

from .camera_calibration import CameraIntrinsics
from .detector import TagDetection
from .errors import GeometryError

logger = logging.getLogger(__name__)

PNP_METHODS = {
    "ippe": cv2.SOLVEPNP_IPPE,
    "iterative": cv2.SOLVEPNP_ITERATIVE,
}


@dataclass
class Pose:
    """Tag-to-camera rigid transform (X_cam = matrix @ X_tag)."""

    matrix: np.ndarray            # 4x4 homogeneous transform
    reprojection_error: float = 0.0  # RMS corner reprojection error in pixels

    @property
    def rotation(self) -> np.ndarray:
        return self.matrix[:3, :3]

    @property
    def translation(self) -> np.ndarray:
        return self.matrix[:3, 3]

    @property
    def position(self) -> Tuple[float, float, float]:
        """Tag center (x, y, z) in the camera frame."""
        t = self.translation
        return (float(t[0]), float(t[1]), float(t[2]))

    @property
    def distance(self) -> float:
        return float(np.linalg.norm(self.translation))

    @property
    def quaternion(self) -> Tuple[float, float, float, float]:
        """Rotation as a unit quaternion (x, y, z, w)."""
        return rotation_to_quaternion(self.rotation)

    @classmethod
    def from_rvec_tvec(
        cls,
        rvec: np.ndarray,
        tvec: np.ndarray,
        reprojection_error: float = 0.0
    ) -> 'Pose':
        """Assemble a pose from a Rodrigues vector and a translation."""
        rmat, _ = cv2.Rodrigues(np.asarray(rvec, dtype=np.float64).reshape(3, 1))
        return cls(
            matrix=make_transform(rmat, np.asarray(tvec, dtype=np.float64).reshape(3)),
            reprojection_error=reprojection_error
        )


def make_transform(rotation: np.ndarray, translation: np.ndarray) -> np.ndarray:
    """Build a 4x4 homogeneous matrix from R and t."""
    T = np.eye(4, dtype=np.float64)
    T[:3, :3] = np.asarray(rotation, dtype=np.float64).reshape(3, 3)
    T[:3, 3] = np.asarray(translation, dtype=np.float64).reshape(3)
    return T


def rotation_to_quaternion(rmat: np.ndarray) -> Tuple[float, float, float, float]:
    """
    Convert a rotation matrix to a quaternion (x, y, z, w) with w >= 0.

    Uses the largest diagonal term as pivot to stay well conditioned.
    """
    r = np.asarray(rmat, dtype=np.float64).reshape(3, 3)
    trace = r[0, 0] + r[1, 1] + r[2, 2]

    if trace > 0:
        s = 2.0 * np.sqrt(trace + 1.0)
        w = 0.25 * s
        x = (r[2, 1] - r[1, 2]) / s
        y = (r[0, 2] - r[2, 0]) / s
        z = (r[1, 0] - r[0, 1]) / s
    elif r[0, 0] > r[1, 1] and r[0, 0] > r[2, 2]:
        s = 2.0 * np.sqrt(1.0 + r[0, 0] - r[1, 1] - r[2, 2])
        w = (r[2, 1] - r[1, 2]) / s
        x = 0.25 * s
        y = (r[0, 1] + r[1, 0]) / s
        z = (r[0, 2] + r[2, 0]) / s
    elif r[1, 1] > r[2, 2]:
        s = 2.0 * np.sqrt(1.0 + r[1, 1] - r[0, 0] - r[2, 2])
        w = (r[0, 2] - r[2, 0]) / s
        x = (r[0, 1] + r[1, 0]) / s
        y = 0.25 * s
        z = (r[1, 2] + r[2, 1]) / s
    else:
        s = 2.0 * np.sqrt(1.0 + r[2, 2] - r[0, 0] - r[1, 1])
        w = (r[1, 0] - r[0, 1]) / s
        x = (r[0, 2] + r[2, 0]) / s
        y = (r[1, 2] + r[2, 1]) / s
        z = 0.25 * s

    q = np.array([x, y, z, w], dtype=np.float64)
    q /= np.linalg.norm(q)
    if q[3] < 0:
        q = -q
    return (float(q[0]), float(q[1]), float(q[2]), float(q[3]))


def tag_object_points(tag_size: float) -> np.ndarray:
    """
    Tag corners in the tag frame (meters), in detection corner order.

    Returns:
        (4, 3) array: top-left, top-right, bottom-right, bottom-left
    """
    h = tag_size / 2.0
    return np.array([
        [-h, -h, 0.0],
        [h, -h, 0.0],
        [h, h, 0.0],
        [-h, h, 0.0]
    ], dtype=np.float64)


def check_corner_geometry(
    corners: np.ndarray,
    min_corner_distance_px: float = 1.0,
    min_corner_sine: float = 0.05
):
    """
    Reject quads that cannot give a well-conditioned pose.

    Args:
        corners: (4, 2) image corners in winding order
        min_corner_distance_px: Minimum distance between any two corners
        min_corner_sine: Minimum |sin| of each interior angle

    Raises:
        GeometryError: If the quad is degenerate
    """
    pts = np.asarray(corners, dtype=np.float64)
    if pts.shape != (4, 2):
        raise GeometryError(f"Expected (4, 2) corners, got {pts.shape}")
    if not np.all(np.isfinite(pts)):
        raise GeometryError("Corners contain non-finite values")

    for i in range(4):
        for j in range(i + 1, 4):
            if np.linalg.norm(pts[i] - pts[j]) < min_corner_distance_px:
                raise GeometryError(f"Corners {i} and {j} are too close together")

    # Cross products at each corner must be large and share one sign,
    # otherwise three corners are collinear or the quad folds over itself.
    crosses = []
    for i in range(4):
        a = pts[i - 1] - pts[i]
        b = pts[(i + 1) % 4] - pts[i]
        cross = a[0] * b[1] - a[1] * b[0]
        sine = abs(cross) / (np.linalg.norm(a) * np.linalg.norm(b))
        if sine < min_corner_sine:
            raise GeometryError(f"Corners around corner {i} are nearly collinear")
        crosses.append(cross)

    if not (all(c > 0 for c in crosses) or all(c < 0 for c in crosses)):
        raise GeometryError("Corners do not form a convex quadrilateral")


class PoseEstimator:
    """
    Estimates tag poses from corner detections with OpenCV solvePnP.

    The default IPPE solver is a direct solve for planar targets. The
    iterative solver and an optional Levenberg-Marquardt refinement are
    available for noisier corners.
    """

    def __init__(
        self,
        method: str = "ippe",
        refine: bool = False,
        max_reprojection_error_px: Optional[float] = None,
        min_corner_distance_px: float = 1.0,
        min_corner_sine: float = 0.05,
        orthonormal_tol: float = 1e-6
    ):
        """
        Initialize pose estimator.

        Args:
            method: 'ippe' or 'iterative'
            refine: Run solvePnPRefineLM on the solution
            max_reprojection_error_px: Reject poses above this RMS error
                (None disables the check)
            min_corner_distance_px: Minimum distance between two corners
            min_corner_sine: Minimum |sin| of interior corner angles
            orthonormal_tol: Tolerance for the rotation validity check
        """
        if method not in PNP_METHODS:
            raise ValueError(f"Unknown PnP method: {method}")

        self.method = method
        self.refine = refine
        self.max_reprojection_error_px = max_reprojection_error_px
        self.min_corner_distance_px = min_corner_distance_px
        self.min_corner_sine = min_corner_sine
        self.orthonormal_tol = orthonormal_tol

        # Pinhole only
        self._dist_coeffs = np.zeros(4, dtype=np.float64)

    def estimate(
        self,
        detection: TagDetection,
        intrinsics: CameraIntrinsics,
        tag_size: float
    ) -> Pose:
        """
        Estimate the tag-to-camera transform for one detection.

        Args:
            detection: Detected tag with corners in object point order
            intrinsics: Camera intrinsics
            tag_size: Printed tag side length in meters

        Returns:
            Pose of the tag in the camera frame

        Raises:
            GeometryError: If the corners are degenerate or no valid pose
                could be recovered
        """
        if not np.isfinite(tag_size) or tag_size <= 0:
            raise GeometryError(f"Tag size must be positive, got {tag_size}")

        image_points = np.asarray(detection.corners, dtype=np.float64)
        check_corner_geometry(
            image_points,
            min_corner_distance_px=self.min_corner_distance_px,
            min_corner_sine=self.min_corner_sine
        )

        object_points = tag_object_points(tag_size)
        camera_matrix = intrinsics.camera_matrix

        try:
            success, rvec, tvec = cv2.solvePnP(
                object_points,
                image_points,
                camera_matrix,
                self._dist_coeffs,
                flags=PNP_METHODS[self.method]
            )
            if success and self.refine:
                rvec, tvec = cv2.solvePnPRefineLM(
                    object_points,
                    image_points,
                    camera_matrix,
                    self._dist_coeffs,
                    rvec,
                    tvec
                )
        except cv2.error as e:
            raise GeometryError(f"solvePnP failed for tag{detection.tag_id}: {e}") from e

        if not success:
            raise GeometryError(f"solvePnP did not converge for tag{detection.tag_id}")

        rvec = np.asarray(rvec, dtype=np.float64).reshape(3)
        tvec = np.asarray(tvec, dtype=np.float64).reshape(3)
        if not (np.all(np.isfinite(rvec)) and np.all(np.isfinite(tvec))):
            raise GeometryError(f"Non-finite pose for tag{detection.tag_id}")

        projected, _ = cv2.projectPoints(
            object_points, rvec, tvec, camera_matrix, self._dist_coeffs
        )
        err = projected.reshape(4, 2) - image_points
        rmse = float(np.sqrt(np.mean(np.sum(err * err, axis=1))))

        pose = Pose.from_rvec_tvec(rvec, tvec, reprojection_error=rmse)
        self._validate(pose, detection.tag_id)
        return pose

    def _validate(self, pose: Pose, tag_id: int):
        """Check the recovered pose is a proper rigid transform in front of the camera."""
        rot = pose.rotation
        if not np.all(np.isfinite(pose.matrix)):
            raise GeometryError(f"Non-finite pose for tag{tag_id}")

        if np.abs(rot.T @ rot - np.eye(3)).max() > self.orthonormal_tol:
            raise GeometryError(f"Rotation for tag{tag_id} is not orthonormal")
        if abs(np.linalg.det(rot) - 1.0) > self.orthonormal_tol:
            raise GeometryError(f"Rotation for tag{tag_id} is not a proper rotation")

        if pose.translation[2] <= 0:
            raise GeometryError(f"Tag{tag_id} pose is behind the camera")

        if (self.max_reprojection_error_px is not None
                and pose.reprojection_error > self.max_reprojection_error_px):
            raise GeometryError(
                f"Tag{tag_id} reprojection error {pose.reprojection_error:.2f}px "
                f"exceeds {self.max_reprojection_error_px:.2f}px"
            )
