"""
Core pipeline: validation, planning, scheduling, workers and cleanup.
"""
