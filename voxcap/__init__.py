"""Microphone capture driven by an external ffmpeg process.

The recorder stops itself on a duration cap or after a stretch of silence and
hands the finished file to the caller for transcription.
"""

__version__ = "0.4.0"
