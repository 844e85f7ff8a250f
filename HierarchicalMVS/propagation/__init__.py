"""
Matching cost and checkerboard hypothesis propagation
"""

from .cost import MatchingCost
from .engine import PropagationEngine, PropagationStage

__all__ = ['MatchingCost', 'PropagationEngine', 'PropagationStage']
