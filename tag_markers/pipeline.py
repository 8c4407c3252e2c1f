"""
Detection Pipeline Module

Runs the per-frame work: tag detection, pose estimation for every tag and
a single marker batch publish.
"""

import time
import logging
import threading
from typing import Callable, List, Optional, Tuple

import cv2
import numpy as np

from .camera_calibration import CameraIntrinsics
from .detector import TagDetector
from .errors import CalibrationMissing, DetectorFailure, GeometryError
from .markers import MarkerArray, MarkerDescriptor
from .pose_estimator import PoseEstimator
from .tag_sizes import TagSizeRegistry

logger = logging.getLogger(__name__)


class PipelineState:
    """
    Node state shared by the pipeline and the lifecycle manager.

    Holds the active flag and the latest camera intrinsics. Every access
    goes through a lock so callbacks may arrive from several threads.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._active = False
        self._intrinsics: Optional[CameraIntrinsics] = None

    @property
    def active(self) -> bool:
        with self._lock:
            return self._active

    @active.setter
    def active(self, value: bool):
        with self._lock:
            self._active = bool(value)

    @property
    def has_calibration(self) -> bool:
        with self._lock:
            return self._intrinsics is not None

    @property
    def intrinsics(self) -> Optional[CameraIntrinsics]:
        with self._lock:
            return self._intrinsics

    def set_intrinsics(self, intrinsics: CameraIntrinsics):
        with self._lock:
            self._intrinsics = intrinsics

    def require_intrinsics(self) -> CameraIntrinsics:
        """
        Current intrinsics.

        Raises:
            CalibrationMissing: If no calibration has been received
        """
        with self._lock:
            if self._intrinsics is None:
                raise CalibrationMissing("No Camera Info Received Yet")
            return self._intrinsics


def to_grayscale(image: np.ndarray) -> np.ndarray:
    """
    Convert a frame to 8-bit single channel.

    Raises:
        ValueError: If the frame layout is not supported
    """
    if image is None or image.size == 0:
        raise ValueError("Empty frame")

    if image.ndim == 3 and image.shape[2] == 1:
        image = image[:, :, 0]

    if image.ndim == 2:
        gray = image
    elif image.ndim == 3 and image.shape[2] == 3:
        gray = cv2.cvtColor(image, cv2.COLOR_BGR2GRAY)
    elif image.ndim == 3 and image.shape[2] == 4:
        gray = cv2.cvtColor(image, cv2.COLOR_BGRA2GRAY)
    else:
        raise ValueError(f"Unsupported frame shape {image.shape}")

    if gray.dtype != np.uint8:
        gray = cv2.convertScaleAbs(gray)
    return gray


def reference_point(image: np.ndarray) -> Tuple[float, float]:
    """Image center (x, y) handed to the detector."""
    height, width = image.shape[:2]
    return (0.5 * width, 0.5 * height)


class DetectionPipeline:
    """
    Turns frames into marker batches.

    Each frame is detected once; each detection is posed independently so
    one bad quad never costs the rest of the frame. The batch goes out in
    one publish call.
    """

    def __init__(
        self,
        detector: TagDetector,
        tag_sizes: TagSizeRegistry,
        estimator: PoseEstimator,
        marker_sink: Callable[[MarkerArray], None],
        frame_id: str = "camera",
        state: Optional[PipelineState] = None,
        display_sink: Optional[Callable[[np.ndarray], None]] = None,
        clock: Callable[[], float] = time.time
    ):
        """
        Initialize the pipeline.

        Args:
            detector: Tag detector
            tag_sizes: Tag size lookup
            estimator: Pose estimator
            marker_sink: Receives one MarkerArray per processed frame
            frame_id: Frame label stamped on every marker
            state: Shared node state (a private one is created if None)
            display_sink: Receives annotated frames when set
            clock: Timestamp source for markers
        """
        self.detector = detector
        self.tag_sizes = tag_sizes
        self.estimator = estimator
        self.marker_sink = marker_sink
        self.frame_id = frame_id
        self.state = state if state is not None else PipelineState()
        self.display_sink = display_sink
        self.clock = clock

        self._warned_uncalibrated = False

        # Statistics
        self.frames_processed = 0
        self.markers_published = 0
        self.processing_rate = 0.0
        self._last_rate_time = time.time()
        self._rate_frame_count = 0

    # --- Callbacks ---

    def on_camera_info(self, intrinsics: CameraIntrinsics):
        """Calibration stream callback."""
        if not self.state.has_calibration:
            logger.info(
                f"Camera info received: fx={intrinsics.fx:.1f} fy={intrinsics.fy:.1f} "
                f"cx={intrinsics.cx:.1f} cy={intrinsics.cy:.1f}"
            )
        self.state.set_intrinsics(intrinsics)
        self._warned_uncalibrated = False

    def on_image(self, image: np.ndarray) -> List[MarkerDescriptor]:
        """Image stream callback. Frames are ignored while inputs are inactive."""
        if not self.state.active:
            logger.debug("Ignoring frame while inactive")
            return []
        try:
            intrinsics = self.state.require_intrinsics()
        except CalibrationMissing as e:
            self._warn_uncalibrated(str(e))
            return []
        return self.process_frame(image, intrinsics)

    # --- Processing ---

    def process_frame(
        self,
        image: np.ndarray,
        intrinsics: Optional[CameraIntrinsics]
    ) -> List[MarkerDescriptor]:
        """
        Detect tags, estimate their poses and publish the marker batch.

        Args:
            image: Grayscale or BGR frame
            intrinsics: Camera intrinsics, or None if not yet received

        Returns:
            Markers published for this frame (empty when the frame was
            skipped or contained no usable tags)
        """
        if intrinsics is None:
            self._warn_uncalibrated("No Camera Info Received Yet")
            return []

        try:
            gray = to_grayscale(image)
        except ValueError as e:
            logger.error(f"Cannot convert frame: {e}")
            return []

        try:
            detections = self.detector.detect(gray, reference_point(gray))
        except DetectorFailure as e:
            logger.error(f"Skipping frame: {e}")
            return []

        stamp = self.clock()
        markers: List[MarkerDescriptor] = []

        for detection in detections:
            tag_size = self.tag_sizes.size_of(detection.tag_id)
            try:
                pose = self.estimator.estimate(detection, intrinsics, tag_size)
            except GeometryError as e:
                logger.warning(f"Skipping tag{detection.tag_id}: {e}")
                continue

            markers.append(MarkerDescriptor.for_tag(
                detection.tag_id, pose, tag_size, self.frame_id, stamp
            ))

        self.marker_sink(MarkerArray(markers=markers))

        if self.display_sink is not None:
            self.display_sink(self.detector.annotate(gray, detections))

        self._update_statistics(len(markers))
        logger.debug(
            f"Frame {self.frames_processed}: {len(detections)} detections, "
            f"{len(markers)} markers"
        )
        return markers

    def _warn_uncalibrated(self, message: str):
        # Once per stale period; on_camera_info re-arms the warning
        if not self._warned_uncalibrated:
            logger.warning(message)
            self._warned_uncalibrated = True

    def _update_statistics(self, num_markers: int):
        self.frames_processed += 1
        self.markers_published += num_markers
        self._rate_frame_count += 1

        current_time = time.time()
        if current_time - self._last_rate_time >= 1.0:
            self.processing_rate = self._rate_frame_count / (
                current_time - self._last_rate_time
            )
            self._rate_frame_count = 0
            self._last_rate_time = current_time
