"""camera-mjpeg-stream: Camera streaming via FFmpeg MJPEG + HTTP multipart."""

from camera_mjpeg_stream.broadcaster import Broadcaster, QueueSink
from camera_mjpeg_stream.capture_process import CaptureProcess
from camera_mjpeg_stream.config import AppSettings, CameraConfig
from camera_mjpeg_stream.jpeg_extractor import JpegFrameExtractor
from camera_mjpeg_stream.reconnect import ReconnectionPolicy
from camera_mjpeg_stream.session import SessionState, StreamSession

__all__ = [
    "AppSettings",
    "Broadcaster",
    "CameraConfig",
    "CaptureProcess",
    "JpegFrameExtractor",
    "QueueSink",
    "ReconnectionPolicy",
    "SessionState",
    "StreamSession",
]
