"""
Allotment: automated job-assignment and capacity-routing engine.
"""

__version__ = "0.1.0"
