"""
alerts — Storm-impact alert pipeline.

Sub-modules:
    channels/      — Per-channel senders and gateways (SMS, email, push)
    proximity      — Which properties fall inside an event's impact zone
    severity       — Ordinal impact scoring
    ledger         — ImpactAlert creation and lifecycle
    rate_limiter   — One SMS per phone + property per window
    dispatcher     — Route an alert to a channel and record the outcome
    monitoring     — Batch orchestrator for a monitoring run
    store          — Async persistence for properties, alerts, SMS log, runs
    orm, models    — Table mappings and shared data structures
    service        — Explicit wiring of the above
"""
