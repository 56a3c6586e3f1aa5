"""
channels — Per-step delivery backends for the notification dispatcher.

Each channel exposes an async ``send`` returning a DeliveryAttempt:
    remote_api   — primary endpoint and fallback providers (HTTP POST)
    contact_sms  — text message to one emergency contact
    push         — push notification to the active client(s)
    banner       — local on-screen alert

Channels never retry. Ordering and fallback live in the dispatcher.
"""
