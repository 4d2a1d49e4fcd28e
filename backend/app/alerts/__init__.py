"""
alerts — Emergency alert distribution engine.

Sub-modules:
    channels/        — Per-channel delivery backends (email, SMS, push)
    alert_service    — Lifecycle orchestration: create, send, update, cancel, analytics
    recipients       — Targeting resolution and deduplication
    dispatcher       — Concurrent recipient × channel fan-out
    acknowledgments  — One acknowledgment per (alert, user)
    templates        — Template rendering and template management
    incidents        — Incident workflow and escalation into alerts
    broadcaster      — Lifecycle event scopes (global, role rooms, user rooms)
    realtime         — WebSocket and Redis pub/sub transports
    storage          — Storage interface + in-memory backend
    sql_storage      — Async SQLAlchemy backend
    models           — Data structures shared across the system
"""
