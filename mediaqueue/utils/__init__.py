"""
This package contains utility modules that provide helper functions and classes
used across the MediaQueue application.

Modules:
    format_utils.py: Functions for parsing and formatting sizes, timecodes and
                     remaining times.
    process_utils.py: The `run_cmd` wrapper for one-shot external commands and
                      psutil helpers for inspecting and killing processes by pid.
    module_updater.py: A class for updating and verifying the external tools.
"""
