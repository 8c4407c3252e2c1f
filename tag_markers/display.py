"""
Live display of annotated frames.

The window is refreshed on its own thread from the latest finished frame;
it never calls back into the pipeline.
"""

import time
import logging
import threading
from typing import Optional

import cv2
import numpy as np

logger = logging.getLogger(__name__)


class DisplayWindow:
    """OpenCV window showing the most recent annotated frame."""

    def __init__(self, title: str = "AprilTags", refresh_hz: float = 30.0):
        self.title = title
        self.refresh_period = 1.0 / refresh_hz
        self._frame_lock = threading.Lock()
        self._latest_frame: Optional[np.ndarray] = None
        self._running = False
        self._thread: Optional[threading.Thread] = None

    def start(self):
        if self._running:
            return
        self._running = True
        self._thread = threading.Thread(target=self._refresh_loop, daemon=True)
        self._thread.start()
        logger.info(f"Display window '{self.title}' started")

    def stop(self):
        self._running = False
        if self._thread is not None:
            self._thread.join(timeout=1.0)
            self._thread = None

    def show(self, frame: np.ndarray):
        """Display sink: queue a frame for the next refresh."""
        with self._frame_lock:
            self._latest_frame = frame

    def _refresh_loop(self):
        cv2.namedWindow(self.title)
        try:
            while self._running:
                with self._frame_lock:
                    frame = self._latest_frame
                    self._latest_frame = None
                if frame is not None:
                    cv2.imshow(self.title, frame)
                cv2.waitKey(1)
                time.sleep(self.refresh_period)
        finally:
            cv2.destroyWindow(self.title)
