"""Generation job queue: task store, sequential worker and backends.

The queue is a single SQLite table drained by one worker loop:
claim the oldest pending task, run the generator command, record the
outcome, notify observers. Claiming is a conditional update, so extra
workers (threads or processes) never pick up the same task.
"""
