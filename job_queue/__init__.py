"""
Job queue — decouples campaign scheduling, message sending and automations.

- Redis Streams are the primary broker; an in-memory broker serves development
- Jobs fall back to a relational table whenever the broker is unreachable
- Workers consume both backends, so nothing enqueued during an outage is lost
"""
