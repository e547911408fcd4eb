"""
Speech-to-text.
"""
from .transcriber import Transcriber, TranscriberBusyError, TranscriptionError, TranscriptionTimeoutError

__all__ = ["Transcriber", "TranscriberBusyError", "TranscriptionError", "TranscriptionTimeoutError"]
