"""
events — Observer registration for presentation layers.

Modules:
    bus — typed AlertStateChanged / DispatchCompleted notifications
"""
