"""
Tag Detection Module

Defines the detector capability the pipeline depends on and an OpenCV
implementation that finds AprilTag or ArUco markers in grayscale frames.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import List, Optional, Sequence, Tuple

import cv2
import numpy as np

from .errors import ConfigurationError, DetectorFailure

logger = logging.getLogger(__name__)

# Tag family / dictionary mapping
TAG_DICTIONARIES = {
    "16h5": cv2.aruco.DICT_APRILTAG_16h5,
    "25h9": cv2.aruco.DICT_APRILTAG_25h9,
    "36h10": cv2.aruco.DICT_APRILTAG_36h10,
    "36h11": cv2.aruco.DICT_APRILTAG_36h11,
    "DICT_4X4_50": cv2.aruco.DICT_4X4_50,
    "DICT_4X4_100": cv2.aruco.DICT_4X4_100,
    "DICT_4X4_250": cv2.aruco.DICT_4X4_250,
    "DICT_4X4_1000": cv2.aruco.DICT_4X4_1000,
    "DICT_5X5_50": cv2.aruco.DICT_5X5_50,
    "DICT_5X5_100": cv2.aruco.DICT_5X5_100,
    "DICT_5X5_250": cv2.aruco.DICT_5X5_250,
    "DICT_5X5_1000": cv2.aruco.DICT_5X5_1000,
    "DICT_6X6_50": cv2.aruco.DICT_6X6_50,
    "DICT_6X6_100": cv2.aruco.DICT_6X6_100,
    "DICT_6X6_250": cv2.aruco.DICT_6X6_250,
    "DICT_6X6_1000": cv2.aruco.DICT_6X6_1000,
    "DICT_7X7_50": cv2.aruco.DICT_7X7_50,
    "DICT_7X7_100": cv2.aruco.DICT_7X7_100,
    "DICT_7X7_250": cv2.aruco.DICT_7X7_250,
    "DICT_7X7_1000": cv2.aruco.DICT_7X7_1000,
}


def resolve_tag_family(name: str) -> int:
    """
    Map a tag family name to an OpenCV dictionary constant.

    Accepts '36h11', 'tag36h11' and 'DICT_APRILTAG_36h11' spellings for
    AprilTag families and the DICT_* names for ArUco dictionaries.

    Raises:
        ConfigurationError: If the family is unknown
    """
    key = str(name).strip()
    if key.startswith("DICT_APRILTAG_"):
        key = key[len("DICT_APRILTAG_"):]
    elif key.startswith("tag"):
        key = key[len("tag"):]

    if key not in TAG_DICTIONARIES:
        raise ConfigurationError(f"Unknown tag family: {name}")
    return TAG_DICTIONARIES[key]


@dataclass
class TagDetection:
    """
    One tag found in a frame.

    corners follow the order of tag_object_points(): top-left, top-right,
    bottom-right, bottom-left of the printed tag.
    """

    tag_id: int
    corners: np.ndarray           # (4, 2) pixel coordinates (u, v)

    def __post_init__(self):
        self.corners = np.asarray(self.corners, dtype=np.float64).reshape(4, 2)

    @property
    def center(self) -> Tuple[float, float]:
        c = self.corners.mean(axis=0)
        return (float(c[0]), float(c[1]))


class TagDetector(ABC):
    """Finds tags in a grayscale frame."""

    @abstractmethod
    def detect(
        self,
        image: np.ndarray,
        reference_point: Tuple[float, float]
    ) -> List[TagDetection]:
        """
        Detect tags in a frame.

        Args:
            image: 8-bit grayscale frame
            reference_point: Frame reference point (image center)

        Returns:
            Zero or more detections

        Raises:
            DetectorFailure: If the frame could not be processed
        """

    def annotate(
        self,
        image: np.ndarray,
        detections: Sequence[TagDetection]
    ) -> np.ndarray:
        """Return a copy of image with detections drawn on it."""
        return image.copy()


class ArucoTagDetector(TagDetector):
    """
    OpenCV ArUco module detector.

    Handles AprilTag families as well as ArUco dictionaries. The reference
    point is not used by OpenCV.
    """

    def __init__(self, family: str = "36h11"):
        """
        Args:
            family: Tag family or ArUco dictionary name
        """
        self.family = family
        self.tag_dict = cv2.aruco.getPredefinedDictionary(
            resolve_tag_family(family)
        )
        self.params = cv2.aruco.DetectorParameters()

        # Optimize detection parameters for robustness
        self.params.adaptiveThreshConstant = 7
        self.params.minMarkerPerimeterRate = 0.02  # Detect smaller markers
        self.params.maxMarkerPerimeterRate = 4.0
        self.params.polygonalApproxAccuracyRate = 0.05
        self.params.minCornerDistanceRate = 0.02
        self.params.cornerRefinementMethod = cv2.aruco.CORNER_REFINE_SUBPIX
        self.params.cornerRefinementWinSize = 5
        self.params.cornerRefinementMaxIterations = 50

        self.detector = cv2.aruco.ArucoDetector(self.tag_dict, self.params)
        logger.info(f"Tag detector ready for family {family}")

    def detect(
        self,
        image: np.ndarray,
        reference_point: Optional[Tuple[float, float]] = None
    ) -> List[TagDetection]:
        try:
            corners, ids, _rejected = self.detector.detectMarkers(image)
        except cv2.error as e:
            raise DetectorFailure(f"Tag detection failed: {e}") from e

        if ids is None or len(ids) == 0:
            return []

        return [
            TagDetection(tag_id=int(tag_id), corners=corners[i].reshape(4, 2))
            for i, tag_id in enumerate(ids.flatten())
        ]

    def annotate(
        self,
        image: np.ndarray,
        detections: Sequence[TagDetection]
    ) -> np.ndarray:
        """
        Draw detected tag outlines and IDs on a color copy of the frame.

        Args:
            image: Grayscale or BGR frame
            detections: Detections to draw

        Returns:
            Annotated BGR frame
        """
        if image.ndim == 2:
            output = cv2.cvtColor(image, cv2.COLOR_GRAY2BGR)
        else:
            output = image.copy()

        for detection in detections:
            corners = detection.corners.astype(int)
            cv2.polylines(output, [corners], True, (0, 255, 0), 2)

            # First corner marks the tag's top-left
            cv2.circle(output, tuple(int(v) for v in corners[0]), 4, (0, 0, 255), -1)

            center = corners.mean(axis=0).astype(int)
            cv2.putText(
                output,
                f"ID:{detection.tag_id}",
                (int(center[0]) - 30, int(center[1]) - 10),
                cv2.FONT_HERSHEY_SIMPLEX,
                0.6, (0, 255, 0), 2
            )

        return output
