"""
jobflow: org-scoped business automation rules for job management.
"""

__version__ = "0.1.0"
