"""
This package contains the core domain models of MediaQueue.

Modules:
    exceptions.py: Custom exception types for persistence, validation, scheduling
                   and external-tool failures.
    task.py: The task status enum and the typed record for each domain
             (`DownloadTask`, `TranscodeTask`), plus task id generation.
    task_store.py: `TaskStore`, the durable, whole-file YAML persistence that
                   makes the queues restartable after a crash.
"""
