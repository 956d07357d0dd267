"""
botstore - persistence core for the community bot platform.
"""

__version__ = "1.0.0"
