"""
Tag Size Registry

Maps tag IDs to their printed side length in meters.
"""

import math
import logging
from typing import Any, Dict, Mapping, Optional

logger = logging.getLogger(__name__)


class TagSizeRegistry:
    """
    Resolves tag IDs to physical side lengths.

    Tags without an explicit entry use the default size. Inputs are
    expected to be validated already (non-negative IDs, positive sizes);
    from_config() does that validation for raw configuration data.
    """

    def __init__(self, default_size: float, sizes: Optional[Mapping[int, float]] = None):
        self._default_size = float(default_size)
        self._sizes: Dict[int, float] = dict(sizes or {})

    @property
    def default_size(self) -> float:
        return self._default_size

    def size_of(self, tag_id: int) -> float:
        """Side length of tag_id in meters."""
        return self._sizes.get(tag_id, self._default_size)

    def __contains__(self, tag_id: int) -> bool:
        return tag_id in self._sizes

    def __len__(self) -> int:
        return len(self._sizes)

    def reconfigure(
        self,
        sizes: Mapping[int, float],
        default_size: Optional[float] = None
    ):
        """
        Replace the size mapping.

        The new mapping is built first and swapped in with one assignment,
        so concurrent readers see either the old or the new mapping.

        Args:
            sizes: New tag ID to size mapping
            default_size: New default, or None to keep the current one
        """
        new_sizes = dict(sizes)
        if default_size is not None:
            self._default_size = float(default_size)
        self._sizes = new_sizes
        logger.info(
            f"Tag sizes reconfigured: {len(new_sizes)} overrides, "
            f"default {self._default_size} m"
        )

    @classmethod
    def from_config(
        cls,
        tag_data: Optional[Mapping[Any, Any]],
        default_size: float
    ) -> 'TagSizeRegistry':
        """
        Create a registry from the 'tag_data' configuration section.

        Each entry maps a tag ID to either {'size': meters} or a bare
        number. Malformed entries are skipped with a warning.

        Args:
            tag_data: Raw tag configuration mapping (may be None)
            default_size: Size used for tags without an entry

        Returns:
            Configured TagSizeRegistry
        """
        return cls(default_size, parse_tag_sizes(tag_data))


def parse_tag_sizes(tag_data: Optional[Mapping[Any, Any]]) -> Dict[int, float]:
    """Validate raw tag_data entries, dropping the malformed ones."""
    sizes: Dict[int, float] = {}
    if not tag_data:
        return sizes

    if not isinstance(tag_data, Mapping):
        logger.warning(f"Ignoring tag_data: expected a mapping, got {type(tag_data).__name__}")
        return sizes

    for key, values in tag_data.items():
        try:
            tag_id = int(key)
        except (TypeError, ValueError):
            logger.warning(f"Skipping tag entry {key!r}: id is not an integer")
            continue
        if isinstance(key, float) or tag_id < 0:
            logger.warning(f"Skipping tag entry {key!r}: invalid id")
            continue

        if isinstance(values, Mapping):
            if 'size' not in values:
                logger.warning(f"Skipping tag{tag_id}: no size given")
                continue
            raw_size = values['size']
        else:
            raw_size = values

        if isinstance(raw_size, bool):
            logger.warning(f"Skipping tag{tag_id}: size {raw_size!r} is not a number")
            continue
        try:
            size = float(raw_size)
        except (TypeError, ValueError):
            logger.warning(f"Skipping tag{tag_id}: size {raw_size!r} is not a number")
            continue
        if not math.isfinite(size) or size <= 0:
            logger.warning(f"Skipping tag{tag_id}: size {size} must be positive")
            continue

        sizes[tag_id] = size
        logger.debug(f"Setting tag{tag_id} to size {size} m.")

    return sizes
