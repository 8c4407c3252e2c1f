import cv2
import numpy as np
import pytest

from tag_markers.camera_calibration import CameraIntrinsics
from tag_markers.detector import ArucoTagDetector, TagDetection, resolve_tag_family
from tag_markers.errors import ConfigurationError
from tag_markers.pose_estimator import PoseEstimator


@pytest.fixture
def tag_image():
    """36h11 tag id 3, 200 px wide, on a white 400x400 canvas."""
    dictionary = cv2.aruco.getPredefinedDictionary(cv2.aruco.DICT_APRILTAG_36h11)
    marker = cv2.aruco.generateImageMarker(dictionary, 3, 200)
    canvas = np.full((400, 400), 255, dtype=np.uint8)
    canvas[100:300, 100:300] = marker
    return canvas


def test_family_names():
    assert resolve_tag_family("36h11") == cv2.aruco.DICT_APRILTAG_36h11
    assert resolve_tag_family("tag36h11") == cv2.aruco.DICT_APRILTAG_36h11
    assert resolve_tag_family("DICT_APRILTAG_16h5") == cv2.aruco.DICT_APRILTAG_16h5
    assert resolve_tag_family("DICT_6X6_250") == cv2.aruco.DICT_6X6_250
    with pytest.raises(ConfigurationError):
        resolve_tag_family("99h99")


def test_detects_generated_tag_in_object_point_order(tag_image):
    detections = ArucoTagDetector("36h11").detect(tag_image, (200.0, 200.0))

    assert len(detections) == 1
    det = detections[0]
    assert det.tag_id == 3
    expected = np.array([[100, 100], [300, 100], [300, 300], [100, 300]], dtype=float)
    np.testing.assert_allclose(det.corners, expected, atol=3.0)


def test_detected_tag_pose(tag_image):
    intr = CameraIntrinsics(fx=400.0, fy=400.0, cx=200.0, cy=200.0)
    (det,) = ArucoTagDetector("36h11").detect(tag_image, (200.0, 200.0))

    pose = PoseEstimator().estimate(det, intr, 0.1)

    # 0.1 m tag spanning 200 px at f=400 sits 0.2 m away
    assert pose.translation[2] == pytest.approx(0.2, rel=0.05)
    assert pose.rotation[2, 2] > 0.95


def test_empty_frame_has_no_detections():
    assert ArucoTagDetector().detect(np.full((100, 100), 255, dtype=np.uint8)) == []


def test_annotate_returns_color_copy(tag_image):
    detector = ArucoTagDetector()
    det = TagDetection(tag_id=3, corners=[[100, 100], [300, 100], [300, 300], [100, 300]])

    out = detector.annotate(tag_image, [det])

    assert out.shape == (400, 400, 3)
    assert tag_image.ndim == 2
