"""
Shared API
==========

HTTP middleware and exception handlers used by the application shell.
"""
