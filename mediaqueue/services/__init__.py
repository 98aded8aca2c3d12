"""
This package contains the service modules that run the task queues.

Modules:
    progress_parser.py: Line parsers and per-task progress trackers for the
                        fetch tool and the encoder.
    encoder_selector.py: GPU and acceleration probing, and the encoder argument
                         vector for a transcode.
    process_supervisor.py: `ProcessSupervisor`, owner of one child process.
    queue_scheduler.py: `QueueScheduler`, FIFO promotion with one active task
                        per domain, cancellation and resume.
    recovery.py: `RecoveryManager`, startup demotion of orphaned tasks.
    logging_service.py: Plain-text command and error logs.
"""
