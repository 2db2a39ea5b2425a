"""
alerts — Alert distribution and consistency engine.

Sub-modules:
    models       — Alert record, events, filters, caller claims
    store        — Durable alert log (SQLAlchemy), expiry-aware reads
    sequencer    — Per-alert versions + per-alert mutation lock
    broadcaster  — Observer sessions, bounded queues, non-blocking fan-out
    resync       — Snapshot/push race handling for (re)connecting observers
    gate         — Admin-only active → resolved transition
    service      — Writer path (persist → publish) and cached read path
    reclaimer    — Background purge of expired alerts
    observer     — Observer-side merge + reconnecting WebSocket client
"""
