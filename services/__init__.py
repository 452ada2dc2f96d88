"""
Standalone services for job dispatching.

This package contains the process entry point that runs alongside the store:
- dispatcher_service: runs the one-shot scheduler, the cron engine and the HTTP gateway
"""
