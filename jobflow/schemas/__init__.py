"""Pydantic request and response models for the automation API."""
