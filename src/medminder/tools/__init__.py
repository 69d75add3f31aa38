"""Medication tools package.

The engine lives in ``medminder.tools.medications``; see that package for the
public operations.
"""
