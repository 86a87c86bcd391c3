"""
slotbooker - availability and booking admission engine for multi-provider
appointment scheduling.
"""

__version__ = "0.3.0"
