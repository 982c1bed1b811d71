"""
Service layer for the jobflow backend.

Rule authoring, the automation engine and its collaborators (context
resolution, condition evaluation, action execution, communications hand-off
and audit). Import modules directly.
"""
