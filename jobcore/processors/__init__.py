"""
JobCore Processors Module

Contains the processor framework and the bundled processors:
- Base processing framework (BaseJobProcessor, ProcessorContext)
- Storyboard pipeline (generation, basic extraction, matching)
"""

from . import base
from . import storyboard

from .base import BaseJobProcessor, FunctionProcessor, ProcessorContext

__all__ = ['base', 'storyboard', 'BaseJobProcessor', 'FunctionProcessor', 'ProcessorContext']
