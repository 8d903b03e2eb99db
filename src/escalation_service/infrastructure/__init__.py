"""
Infrastructure
==============

Process-wide technical services (database engine and sessions).
"""
