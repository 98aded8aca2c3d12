"""
This package contains the orchestration layer of MediaQueue.

Modules:
    orchestrator.py: `MediaQueue`, the facade that owns the stores and schedulers
                     of both domains and launches their child processes.
"""
