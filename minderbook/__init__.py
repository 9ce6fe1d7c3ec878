"""
Minderbook - booking and availability scheduling for childminders.
"""

__version__ = "0.1.0"
