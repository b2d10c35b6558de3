"""
Shared utilities for StreamPanel processes.

- logging_config: process-wide logging setup used by the service and launcher
"""
