"""
Node Configuration

Loads node parameters from a YAML file. Missing keys fall back to the
defaults below.
"""

import math
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

import yaml

from .errors import ConfigurationError

logger = logging.getLogger(__name__)

DEFAULT_TAG_FAMILY = "36h11"
DEFAULT_TAG_SIZE = 0.1
DEFAULT_TF_FRAME = "camera"
DEFAULT_IMAGE_TOPIC = "image"
DEFAULT_CAMERA_INFO_TOPIC = "camera_info"
DEFAULT_MARKER_TOPIC = "marker_array"


def _section(data: Dict[str, Any], key: str) -> Dict[str, Any]:
    """Nested mapping under key; absent or empty sections are {}."""
    section = data.get(key) or {}
    if not isinstance(section, dict):
        raise ConfigurationError(f"{key} must be a mapping, got {type(section).__name__}")
    return section


def _flag(value: Any, name: str) -> bool:
    # YAML true/false arrive as bool; quoted strings like "false" do not
    if isinstance(value, (bool, int)):
        return bool(value)
    logger.warning(f"Ignoring {name} {value!r}: expected true or false")
    return False


@dataclass
class NodeConfig:
    """Startup parameters for the tag marker node."""

    tag_family: str = DEFAULT_TAG_FAMILY
    default_tag_size: float = DEFAULT_TAG_SIZE
    tf_frame: str = DEFAULT_TF_FRAME
    viewer: bool = False
    tag_data: Dict[Any, Any] = field(default_factory=dict)  # raw, validated by TagSizeRegistry
    image_topic: str = DEFAULT_IMAGE_TOPIC
    camera_info_topic: str = DEFAULT_CAMERA_INFO_TOPIC
    marker_topic: str = DEFAULT_MARKER_TOPIC
    pnp_method: str = "ippe"
    pnp_refine: bool = False
    max_reprojection_error_px: Optional[float] = None

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> 'NodeConfig':
        """
        Build a configuration from a parsed YAML mapping.

        A bad default_tag_size falls back to DEFAULT_TAG_SIZE with a
        warning; per-tag entries are checked later by the size registry.

        Raises:
            ConfigurationError: If the data, topics or pose is not a mapping
        """
        if data is None:
            data = {}
        if not isinstance(data, dict):
            raise ConfigurationError("Configuration must be a mapping")

        topics = _section(data, 'topics')
        pose = _section(data, 'pose')

        default_size = data.get('default_tag_size', DEFAULT_TAG_SIZE)
        try:
            default_size = float(default_size)
        except (TypeError, ValueError):
            default_size = float('nan')
        if not math.isfinite(default_size) or default_size <= 0:
            logger.warning(
                f"Invalid default_tag_size {data.get('default_tag_size')!r}, "
                f"using {DEFAULT_TAG_SIZE} m"
            )
            default_size = DEFAULT_TAG_SIZE

        tag_data = data.get('tag_data', {}) or {}
        if not isinstance(tag_data, dict):
            logger.warning("Ignoring tag_data: expected a mapping")
            tag_data = {}

        max_error = pose.get('max_reprojection_error_px')
        if max_error is not None:
            try:
                max_error = float(max_error)
            except (TypeError, ValueError) as e:
                raise ConfigurationError(
                    f"Invalid pose.max_reprojection_error_px: {max_error!r}"
                ) from e

        return cls(
            tag_family=str(data.get('tag_family', DEFAULT_TAG_FAMILY)),
            default_tag_size=default_size,
            tf_frame=str(data.get('tf_frame', DEFAULT_TF_FRAME)),
            viewer=_flag(data.get('viewer', False), 'viewer'),
            tag_data=tag_data,
            image_topic=topics.get('image', DEFAULT_IMAGE_TOPIC),
            camera_info_topic=topics.get('camera_info', DEFAULT_CAMERA_INFO_TOPIC),
            marker_topic=topics.get('markers', DEFAULT_MARKER_TOPIC),
            pnp_method=pose.get('method', 'ippe'),
            pnp_refine=_flag(pose.get('refine', False), 'pose.refine'),
            max_reprojection_error_px=max_error
        )

    @classmethod
    def from_yaml(cls, path: str) -> 'NodeConfig':
        """
        Load configuration from a YAML file.

        Raises:
            ConfigurationError: If the file cannot be read or parsed
        """
        try:
            with open(path, 'r') as f:
                data = yaml.safe_load(f)
        except (OSError, yaml.YAMLError) as e:
            raise ConfigurationError(f"Failed to load configuration {path}: {e}") from e

        config = cls.from_dict(data)
        logger.info(f"Loaded configuration from {path}")
        return config
