"""
alerts — Emergency alert coordination and multi-channel dispatch.

Sub-modules:
    channels/       — Delivery backends (remote API, contact SMS, push, banner)
    coordinator     — Session state machine: trigger → locate → dispatch → log
    dispatcher      — Primary/fallback/contact/push/banner dispatch flow
    contacts        — Persisted emergency contact book
    event_log       — Bounded history of dispatched emergencies
    models          — Data structures shared across the system
"""
