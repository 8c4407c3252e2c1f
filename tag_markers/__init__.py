"""
Tag Markers

Estimates the 3D pose of fiducial tags seen by a calibrated camera and
publishes them as visualization markers, consuming frames only while
someone listens.
"""

__version__ = "0.1.0"

from .camera_calibration import CameraIntrinsics, load_calibration
from .detector import ArucoTagDetector, TagDetection, TagDetector
from .errors import (
    CalibrationMissing,
    ConfigurationError,
    DetectorFailure,
    GeometryError,
    SubscriptionError,
    TagMarkersError,
)
from .lifecycle import LifecycleState, SubscriptionLifecycleManager
from .markers import MarkerArray, MarkerDescriptor
from .pipeline import DetectionPipeline, PipelineState
from .pose_estimator import Pose, PoseEstimator
from .tag_sizes import TagSizeRegistry
