"""
perfstream - continuous performance measures from Android devices
"""

__version__ = "0.1.0"
