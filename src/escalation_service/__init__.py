"""
Case Escalation Service
=======================

SLA follow-up and escalation pipeline for support cases.
"""

__version__ = "1.0.0"
