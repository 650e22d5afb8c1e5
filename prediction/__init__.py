"""
Trajectory prediction: SondeHub client, TTL/LRU cache and per-subject throttle.
"""
