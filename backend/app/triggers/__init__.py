"""
triggers — Emergency detection on inbound text.

Modules:
    matcher — TriggerRule set and keyword/sender evaluation
"""
