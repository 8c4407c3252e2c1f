"""
Tag Marker Node - Main Entry Point

Wires the detection pipeline to its input and output topics and lets the
subscription lifecycle decide when frames are consumed. The command line
entry point feeds the node from a camera or video file and echoes the
published markers.
"""

import time
import signal
import sys
import logging
import argparse
import threading
from pathlib import Path
from typing import Optional, Union

import cv2
import numpy as np

from .camera_calibration import CameraIntrinsics, load_calibration
from .config import NodeConfig
from .detector import ArucoTagDetector, TagDetector
from .display import DisplayWindow
from .errors import ConfigurationError
from .lifecycle import SubscriptionLifecycleManager
from .markers import MarkerArray
from .pipeline import DetectionPipeline, PipelineState
from .pose_estimator import PoseEstimator
from .tag_sizes import TagSizeRegistry
from .transport import Topic

logger = logging.getLogger(__name__)


class TagMarkerNode:
    """
    Publishes tag poses as visualization markers.

    Frames and camera info are only consumed while the marker topic has
    at least one subscriber.
    """

    def __init__(
        self,
        config: NodeConfig,
        detector: Optional[TagDetector] = None,
        display: Optional[DisplayWindow] = None
    ):
        """
        Initialize the node.

        Args:
            config: Node configuration
            detector: Tag detector (an OpenCV detector for config.tag_family
                is created if None)
            display: Display window used when config.viewer is set

        Raises:
            ConfigurationError: If the node cannot be set up
        """
        self.config = config
        self.state = PipelineState()

        if detector is None:
            detector = ArucoTagDetector(config.tag_family)

        try:
            estimator = PoseEstimator(
                method=config.pnp_method,
                refine=config.pnp_refine,
                max_reprojection_error_px=config.max_reprojection_error_px
            )
        except ValueError as e:
            raise ConfigurationError(str(e)) from e

        self.tag_sizes = TagSizeRegistry.from_config(
            config.tag_data, config.default_tag_size
        )
        logger.info(
            f"Tag sizes: default {self.tag_sizes.default_size} m, "
            f"{len(self.tag_sizes)} overrides"
        )

        self.image_topic = Topic(config.image_topic)
        self.camera_info_topic = Topic(config.camera_info_topic)
        self.marker_topic = self._advertise_markers(config.marker_topic)

        self.display: Optional[DisplayWindow] = None
        if config.viewer:
            self.display = display if display is not None else DisplayWindow()

        self.pipeline = DetectionPipeline(
            detector=detector,
            tag_sizes=self.tag_sizes,
            estimator=estimator,
            marker_sink=self.marker_topic.publish,
            frame_id=config.tf_frame,
            state=self.state,
            display_sink=self.display.show if self.display is not None else None
        )

        self.lifecycle = SubscriptionLifecycleManager(
            streams={
                'image': lambda: self.image_topic.subscribe(self.pipeline.on_image),
                'camera_info': lambda: self.camera_info_topic.subscribe(
                    self.pipeline.on_camera_info
                ),
            },
            state=self.state
        )
        self.marker_topic.on_connect = self.lifecycle.on_subscriber_status
        self.marker_topic.on_disconnect = self.lifecycle.on_subscriber_status

    def _advertise_markers(self, name: str) -> Topic:
        if not name:
            raise ConfigurationError("Cannot advertise marker output: empty topic name")
        return Topic(name)

    def start(self):
        """Start the display (if enabled). Input streams follow demand."""
        if self.display is not None:
            self.display.start()
        logger.info("AprilTags node started.")

    def stop(self):
        """Close input streams and the display."""
        self.lifecycle.shutdown()
        if self.display is not None:
            self.display.stop()
        logger.info("AprilTags node stopped.")


class FrameGrabber:
    """Background capture from a camera index or a video file."""

    def __init__(
        self,
        source: Union[int, str] = 0,
        width: int = 640,
        height: int = 480,
        fps: int = 30
    ):
        self.source = source
        self.width = width
        self.height = height
        self.fps = fps
        self._cap: Optional[cv2.VideoCapture] = None
        self._frame: Optional[np.ndarray] = None
        self._lock = threading.Lock()
        self._running = False
        self._thread: Optional[threading.Thread] = None

    @property
    def is_file(self) -> bool:
        return isinstance(self.source, str)

    @property
    def running(self) -> bool:
        return self._running

    def start(self) -> bool:
        self._cap = cv2.VideoCapture(self.source)
        if not self._cap.isOpened():
            logger.error(f"Failed to open video source {self.source}")
            return False

        if not self.is_file:
            self._cap.set(cv2.CAP_PROP_FRAME_WIDTH, self.width)
            self._cap.set(cv2.CAP_PROP_FRAME_HEIGHT, self.height)
            self._cap.set(cv2.CAP_PROP_FPS, self.fps)
            self._cap.set(cv2.CAP_PROP_BUFFERSIZE, 1)  # Minimize latency

        self._running = True
        self._thread = threading.Thread(target=self._capture_loop, daemon=True)
        self._thread.start()
        logger.info(f"Video source {self.source} started")
        return True

    def stop(self):
        self._running = False
        if self._thread is not None:
            self._thread.join(timeout=1.0)
            self._thread = None
        if self._cap is not None:
            self._cap.release()
            self._cap = None

    def get_frame(self) -> Optional[np.ndarray]:
        """Take the latest frame, or None if nothing new arrived."""
        with self._lock:
            frame, self._frame = self._frame, None
        return frame

    def _capture_loop(self):
        period = 1.0 / self.fps if self.fps > 0 else 0.0
        while self._running and self._cap is not None:
            ret, frame = self._cap.read()
            if ret:
                with self._lock:
                    self._frame = frame
                if self.is_file:
                    time.sleep(period)
            elif self.is_file:
                logger.info("End of video file")
                self._running = False
            else:
                time.sleep(0.001)


class MarkerEcho:
    """Marker consumer that logs what the node publishes."""

    def __init__(self):
        self.batches = 0

    def __call__(self, batch: MarkerArray):
        self.batches += 1
        for marker in batch:
            x, y, z = marker.pose.position
            logger.info(
                f"{marker.namespace}: pos=({x:+.3f}, {y:+.3f}, {z:.3f})m "
                f"dist={marker.pose.distance:.3f}m"
            )


def run(
    node: TagMarkerNode,
    grabber: FrameGrabber,
    intrinsics: CameraIntrinsics,
    stop_event: threading.Event,
    info_rate_hz: float = 1.0
):
    """
    Feed camera frames and calibration into the node until stopped.

    Frames are published whether or not the node consumes them; the node's
    lifecycle decides if they are processed.
    """
    info_period = 1.0 / info_rate_hz
    last_info = 0.0

    while not stop_event.is_set():
        now = time.time()
        if now - last_info >= info_period:
            node.camera_info_topic.publish(intrinsics)
            last_info = now

        frame = grabber.get_frame()
        if frame is None:
            if not grabber.running:
                break
            time.sleep(0.005)
            continue

        node.image_topic.publish(frame)


def main():
    """Main entry point."""
    parser = argparse.ArgumentParser(
        description="Publish AprilTag poses as visualization markers"
    )
    parser.add_argument(
        '--config',
        type=str,
        default='config/tag_markers.yaml',
        help='Path to configuration file'
    )
    parser.add_argument(
        '--calibration',
        type=str,
        default='config/camera_params.yaml',
        help='Camera calibration file'
    )
    parser.add_argument(
        '--source', '-s',
        type=str,
        default='0',
        help='Camera device ID or video file path (default: 0)'
    )
    parser.add_argument('--width', type=int, default=640, help='Camera width')
    parser.add_argument('--height', type=int, default=480, help='Camera height')
    parser.add_argument('--fps', type=int, default=30, help='Capture rate')
    parser.add_argument(
        '--viewer',
        action='store_true',
        help='Show annotated frames (overrides config)'
    )
    parser.add_argument(
        '--no-echo',
        action='store_true',
        help='Do not subscribe a marker consumer (node stays idle)'
    )
    parser.add_argument(
        '-v', '--verbose',
        action='store_true',
        help='Enable verbose logging'
    )

    args = parser.parse_args()

    log_level = logging.DEBUG if args.verbose else logging.INFO
    logging.basicConfig(
        level=log_level,
        format='%(asctime)s [%(levelname)s] %(name)s: %(message)s'
    )

    try:
        config_path = Path(args.config)
        config = NodeConfig.from_yaml(str(config_path)) if config_path.exists() else NodeConfig()
        if not config_path.exists():
            logger.warning(f"Configuration file not found: {config_path}, using defaults")
        if args.viewer:
            config.viewer = True

        intrinsics = load_calibration(args.calibration)
        node = TagMarkerNode(config)
    except ConfigurationError as e:
        logger.error(f"Startup failed: {e}")
        sys.exit(1)

    source: Union[int, str] = int(args.source) if args.source.isdigit() else args.source
    grabber = FrameGrabber(source, args.width, args.height, args.fps)
    if not grabber.start():
        sys.exit(1)

    stop_event = threading.Event()

    def _signal_handler(signum, frame):
        logger.info(f"Received signal {signum}, initiating shutdown...")
        stop_event.set()

    signal.signal(signal.SIGINT, _signal_handler)
    signal.signal(signal.SIGTERM, _signal_handler)

    node.start()
    echo_subscription = None
    if not args.no_echo:
        echo_subscription = node.marker_topic.subscribe(MarkerEcho())

    try:
        run(node, grabber, intrinsics, stop_event)
    finally:
        if echo_subscription is not None:
            echo_subscription.shutdown()
        node.stop()
        grabber.stop()
        logger.info(
            f"Processed {node.pipeline.frames_processed} frames, "
            f"published {node.pipeline.markers_published} markers"
        )


if __name__ == "__main__":
    main()
