"""
Marker Output Records

Visualization markers published for every posed tag, grouped per frame.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Tuple

from .pose_estimator import Pose

# Arrow length relative to tag size, for display emphasis only
ARROW_LENGTH_RATIO = 5.0

MARKER_COLOR = (1.0, 0.0, 1.0, 1.0)  # r, g, b, a


class MarkerType(Enum):
    ARROW = "arrow"
    CUBE = "cube"


class MarkerAction(Enum):
    ADD = "add"
    DELETE = "delete"


@dataclass
class MarkerDescriptor:
    """One visualization marker for a posed tag."""

    marker_id: int                # Equal to the tag ID
    namespace: str                # "tag<id>"
    pose: Pose                    # Tag pose in the camera frame
    scale: Tuple[float, float, float]
    frame_id: str                 # Reference frame label
    stamp: float                  # Publish timestamp (seconds)
    color: Tuple[float, float, float, float] = MARKER_COLOR
    marker_type: MarkerType = MarkerType.ARROW
    action: MarkerAction = MarkerAction.ADD

    @classmethod
    def for_tag(
        cls,
        tag_id: int,
        pose: Pose,
        tag_size: float,
        frame_id: str,
        stamp: float
    ) -> 'MarkerDescriptor':
        """Build the marker for a tag, scaled from its physical size."""
        return cls(
            marker_id=tag_id,
            namespace=f"tag{tag_id}",
            pose=pose,
            scale=(tag_size, tag_size * ARROW_LENGTH_RATIO, tag_size),
            frame_id=frame_id,
            stamp=stamp
        )

    def to_dict(self) -> Dict[str, Any]:
        """Convert to a plain dictionary."""
        x, y, z = self.pose.position
        qx, qy, qz, qw = self.pose.quaternion
        return {
            'header': {'frame_id': self.frame_id, 'stamp': self.stamp},
            'ns': self.namespace,
            'id': self.marker_id,
            'type': self.marker_type.value,
            'action': self.action.value,
            'pose': {
                'position': {'x': x, 'y': y, 'z': z},
                'orientation': {'x': qx, 'y': qy, 'z': qz, 'w': qw}
            },
            'scale': {'x': self.scale[0], 'y': self.scale[1], 'z': self.scale[2]},
            'color': dict(zip(('r', 'g', 'b', 'a'), self.color))
        }


@dataclass
class MarkerArray:
    """All markers for one frame, published together."""

    markers: List[MarkerDescriptor] = field(default_factory=list)

    def __len__(self) -> int:
        return len(self.markers)

    def __iter__(self):
        return iter(self.markers)

    @property
    def ids(self) -> List[int]:
        return [m.marker_id for m in self.markers]

    def to_dict(self) -> Dict[str, Any]:
        return {'markers': [m.to_dict() for m in self.markers]}
