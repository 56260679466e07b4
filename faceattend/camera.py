import logging
import threading

import cv2

from .config import CAMERA_INDEX

logger = logging.getLogger(__name__)


class CameraManager:
    _instance = None
    _lock = threading.Lock()

    @classmethod
    def get_instance(cls):
        """Process-wide CameraManager (singleton)"""
        if cls._instance is None:
            with cls._lock:
                if cls._instance is None:
                    cls._instance = cls()
        return cls._instance

    def __init__(self, camera_index=CAMERA_INDEX):
        if CameraManager._instance is not None:
            raise RuntimeError("CameraManager is a singleton - use get_instance()")
        self.camera_index = camera_index
        self._camera = None

    def get_camera(self):
        """Open the camera on first use"""
        if self._camera is None:
            self._camera = cv2.VideoCapture(self.camera_index)
            if not self._camera.isOpened():
                logger.warning("Camera %s could not be opened", self.camera_index)
        return self._camera

    def read_frame(self):
        """Next frame, or None when the camera has no more frames"""
        success, frame = self.get_camera().read()
        return frame if success else None

    def release_camera(self):
        if self._camera is not None:
            self._camera.release()
            self._camera = None
            logger.info("Camera released")
