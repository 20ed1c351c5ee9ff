"""
LXC Server module.

FastAPI facade over the engine: user intents come in as HTTP requests,
snapshots and change notifications (Server-Sent Events) go out.
"""
