"""
alerts — Alert prioritisation, recipient targeting and notification dispatch.

Sub-modules:
    channels/             — SMS and email delivery providers
    priority              — 0–100 urgency score from severity/urgency/certainty
    recipients            — Deduplicated recipient resolution (geo, area, role)
    channel_gate          — Per-user, per-channel eligibility
    formatter             — SMS and email message rendering
    dispatcher            — Bounded concurrent fan-out with partial failure
    stats                 — Atomic delivery-counter updates on the alert
    notification_service  — NotificationEngine entry points
    stores / repository   — In-memory and SQLAlchemy persistence adapters
    geo_fence             — Spatial targeting of alert zones
    models                — Data structures shared across the system
"""
