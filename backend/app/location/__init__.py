"""
location — Position fixes for the alert pipeline.

Modules:
    provider — LocationProvider contract, static and client-reported providers
"""
