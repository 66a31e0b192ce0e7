"""
Nearest-amenity proximity analysis for directories of origin points.
"""

__version__ = "0.1.0"
