"""
trafficshift - traffic-shifting core for progressive canary delivery.

Computes the canary/stable traffic split a rollout should have right now,
drives it into one or more routing backends (in-process or plugin) and
confirms the backend applied it.
"""

__version__ = "0.4.0"
