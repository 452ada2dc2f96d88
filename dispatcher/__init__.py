"""
Persistent job dispatcher.

Clients register one-shot jobs ("fire once at time T") and recurring cron
descriptors; two long-lived workers deliver them as HTTP callbacks:
- scheduler: sleeps until the next one-shot job is due, dispatches and deletes it
- crons: keeps the active set of recurring triggers in step with the cron table
"""
