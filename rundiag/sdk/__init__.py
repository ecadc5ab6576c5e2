"""Python SDK: per-run capture session."""

from rundiag.sdk.capture_session import CaptureSession

__all__ = ["CaptureSession"]
