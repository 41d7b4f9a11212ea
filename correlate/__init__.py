"""
Correlate package: map a crash to its source location and to the action identifier guarding it.
"""

from .stack import parse_stack_trace, get_all_user_frames
from .extract import build_extractor

__all__ = ["parse_stack_trace", "get_all_user_frames", "build_extractor"]
