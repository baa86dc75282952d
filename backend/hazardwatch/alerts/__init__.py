"""
alerts — Location-based notification pipeline.

Sub-modules:
    channels/      — Per-channel delivery backends (email, Expo push)
    dispatcher     — Core orchestration: match, partition, send, audit
    matcher        — Per-subscriber inclusion decision
    templates      — Fixed notification copy
    delivery_log   — Best-effort append-only audit trail
    events         — Status-transition detection between measurements
    subscribers    — Subscriber store contract and pipeline entry point
    models         — Data structures shared across the pipeline
"""
