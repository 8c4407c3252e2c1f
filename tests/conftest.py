"""Shared fixtures: intrinsics, synthetic tag projections and a fake detector."""

import numpy as np
import pytest

from tag_markers.camera_calibration import CameraIntrinsics
from tag_markers.detector import TagDetection, TagDetector
from tag_markers.errors import DetectorFailure
from tag_markers.pose_estimator import tag_object_points


def rotation_xyz(rx_deg: float, ry_deg: float, rz_deg: float) -> np.ndarray:
    rx, ry, rz = np.radians([rx_deg, ry_deg, rz_deg])
    Rx = np.array([[1, 0, 0], [0, np.cos(rx), -np.sin(rx)], [0, np.sin(rx), np.cos(rx)]])
    Ry = np.array([[np.cos(ry), 0, np.sin(ry)], [0, 1, 0], [-np.sin(ry), 0, np.cos(ry)]])
    Rz = np.array([[np.cos(rz), -np.sin(rz), 0], [np.sin(rz), np.cos(rz), 0], [0, 0, 1]])
    return Rz @ Ry @ Rx


class FakeDetector(TagDetector):
    """Returns a scripted list of detections for every frame."""

    def __init__(self, detections=None, fail=False):
        self.detections = list(detections or [])
        self.fail = fail
        self.calls = []
        self.annotated = 0

    def detect(self, image, reference_point):
        self.calls.append((image.shape, reference_point))
        if self.fail:
            raise DetectorFailure("scripted failure")
        return list(self.detections)

    def annotate(self, image, detections):
        self.annotated += 1
        return image.copy()


@pytest.fixture
def intrinsics():
    return CameraIntrinsics(fx=600.0, fy=600.0, cx=320.0, cy=240.0)


@pytest.fixture
def project_tag(intrinsics):
    """Factory: exact image corners of a tag at pose (R, t)."""

    def _project(tag_id, R, t, tag_size, cam=None):
        cam = cam or intrinsics
        obj = tag_object_points(tag_size)
        pts_cam = (np.asarray(R) @ obj.T).T + np.asarray(t, dtype=np.float64)
        return TagDetection(tag_id=tag_id, corners=cam.project(pts_cam))

    return _project


@pytest.fixture
def frame():
    return np.zeros((480, 640), dtype=np.uint8)


@pytest.fixture
def fake_detector_cls():
    return FakeDetector


@pytest.fixture
def rotation():
    return rotation_xyz
