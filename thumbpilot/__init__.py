"""
ThumbPilot - autonomous thumbnail A/B optimization.
"""

__version__ = "0.1.0"
