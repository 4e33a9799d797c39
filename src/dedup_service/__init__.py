"""
Patient Duplicate Detection & Merge Service

Finds likely duplicate patient records within a clinic, queues them for review
and merges confirmed pairs without losing dependent records.
"""

__version__ = "1.0.0"
