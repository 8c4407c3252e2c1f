"""
Error Types

Every failure the node reports derives from TagMarkersError. Only
ConfigurationError is allowed to stop the process, and only at startup.
"""


class TagMarkersError(Exception):
    """Base class for all tag marker errors."""


class CalibrationMissing(TagMarkersError):
    """A frame arrived before any camera intrinsics were received."""


class DetectorFailure(TagMarkersError):
    """The tag detector could not process a frame."""


class GeometryError(TagMarkersError, ValueError):
    """Pose estimation produced no usable pose for a detection."""


class SubscriptionError(TagMarkersError):
    """Opening or closing an input stream subscription failed."""


class ConfigurationError(TagMarkersError):
    """Startup configuration is unusable."""
