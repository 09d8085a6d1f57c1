"""Streaming translation pipeline: reassembly, translation, emission, lifecycle."""

from .emitter import StreamEmitter
from .reassembler import FrameReassembler
from .session import SessionState, StreamSession
from .translator import RecordTranslator, Translation

__all__ = [
    "FrameReassembler",
    "RecordTranslator",
    "SessionState",
    "StreamEmitter",
    "StreamSession",
    "Translation",
]
