"""
Weekly goal rollover engine.

This package advances users from one ISO week to the next: it archives the
vacated week, regenerates goal instances from recurring templates and dream
goals, and keeps duration counters in the document store up to date.
"""
