"""Video encoders (null, MJPEG), file and circular outputs, and BMP, PNG, YUV, DNG and JPEG writers."""

__version__ = "1.10.0"