"""ffmpegsr: single-instance ffmpeg screen recording supervisor."""

__version__ = "0.1.0"
