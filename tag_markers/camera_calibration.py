"""
Camera Calibration Module

Holds the pinhole intrinsics used for tag pose estimation and loads them
from calibration YAML files or camera info style K matrices.
Lens distortion is not modeled.
"""

import math
import logging
from dataclasses import dataclass
from typing import Sequence

import numpy as np
import yaml

from .errors import ConfigurationError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CameraIntrinsics:
    """Pinhole camera intrinsics in pixels."""

    fx: float                     # Focal length along x
    fy: float                     # Focal length along y
    cx: float                     # Principal point x
    cy: float                     # Principal point y

    def __post_init__(self):
        for name in ('fx', 'fy', 'cx', 'cy'):
            if not math.isfinite(getattr(self, name)):
                raise ValueError(f"{name} must be finite")
        if self.fx <= 0 or self.fy <= 0:
            raise ValueError(
                f"Focal lengths must be positive, got fx={self.fx}, fy={self.fy}"
            )

    @property
    def camera_matrix(self) -> np.ndarray:
        """3x3 camera matrix in OpenCV layout."""
        return np.array([
            [self.fx, 0.0, self.cx],
            [0.0, self.fy, self.cy],
            [0.0, 0.0, 1.0]
        ], dtype=np.float64)

    @classmethod
    def from_camera_matrix(cls, matrix: np.ndarray) -> 'CameraIntrinsics':
        """Build intrinsics from a 3x3 camera matrix."""
        m = np.asarray(matrix, dtype=np.float64).reshape(3, 3)
        return cls(
            fx=float(m[0, 0]),
            fy=float(m[1, 1]),
            cx=float(m[0, 2]),
            cy=float(m[1, 2])
        )

    @classmethod
    def from_k(cls, k: Sequence[float]) -> 'CameraIntrinsics':
        """
        Build intrinsics from a row-major 9 element K list.

        This is the layout camera info messages carry.

        Args:
            k: [fx, 0, cx, 0, fy, cy, 0, 0, 1]

        Returns:
            Intrinsics read from K[0], K[2], K[4] and K[5]
        """
        if len(k) != 9:
            raise ValueError(f"K must have 9 elements, got {len(k)}")
        return cls(
            fx=float(k[0]),
            fy=float(k[4]),
            cx=float(k[2]),
            cy=float(k[5])
        )

    def project(self, points_cam: np.ndarray) -> np.ndarray:
        """
        Project camera-frame 3D points to pixel coordinates.

        Args:
            points_cam: (N, 3) points with positive z

        Returns:
            (N, 2) pixel coordinates (u, v)
        """
        pts = np.asarray(points_cam, dtype=np.float64).reshape(-1, 3)
        u = self.fx * pts[:, 0] / pts[:, 2] + self.cx
        v = self.fy * pts[:, 1] / pts[:, 2] + self.cy
        return np.stack([u, v], axis=1)


def load_calibration(filepath: str) -> CameraIntrinsics:
    """
    Load camera intrinsics from a calibration YAML file.

    Accepts the chessboard calibration layout (camera_matrix with a 'data'
    list, or a bare list) as well as a camera info style 'K' list.
    Distortion coefficients are read only to warn that they are ignored.

    Args:
        filepath: Calibration file path

    Returns:
        Loaded intrinsics

    Raises:
        ConfigurationError: If the file is missing or malformed
    """
    try:
        with open(filepath, 'r') as f:
            data = yaml.safe_load(f)
    except (OSError, yaml.YAMLError) as e:
        raise ConfigurationError(f"Failed to read calibration {filepath}: {e}") from e

    if not isinstance(data, dict):
        raise ConfigurationError(f"Calibration {filepath} is not a mapping")

    try:
        if 'camera_matrix' in data:
            cm_data = data['camera_matrix']
            if isinstance(cm_data, dict) and 'data' in cm_data:
                matrix = np.array(cm_data['data'], dtype=np.float64).reshape(3, 3)
            else:
                matrix = np.array(cm_data, dtype=np.float64).reshape(3, 3)
            intrinsics = CameraIntrinsics.from_camera_matrix(matrix)
        elif 'K' in data:
            intrinsics = CameraIntrinsics.from_k(data['K'])
        else:
            raise ConfigurationError(
                f"Calibration {filepath} has no camera_matrix or K"
            )
    except (TypeError, ValueError) as e:
        raise ConfigurationError(f"Malformed calibration {filepath}: {e}") from e

    dc_data = data.get('distortion_coefficients')
    if isinstance(dc_data, dict):
        dc_data = dc_data.get('data')
    if dc_data is not None and np.any(np.asarray(dc_data, dtype=np.float64) != 0):
        logger.warning(
            "Calibration has distortion coefficients; they are ignored "
            "(pinhole model only)"
        )

    if data.get('calibration_info', {}).get('date') == 'NOT_CALIBRATED':
        logger.warning("Camera not calibrated - using placeholder values!")

    logger.info(f"Loaded calibration from {filepath}")
    return intrinsics
