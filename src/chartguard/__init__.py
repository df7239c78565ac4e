"""
chartguard - Safe visualization queries over large tabular datasets.
"""

__version__ = "0.1.0"
