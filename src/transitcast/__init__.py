"""
Transitcast: real-time vehicle state broadcast broker.

A single-process publish/subscribe broker that enriches raw vehicle
positions with route geometry and delivers them to route subscribers
with at-least-once retry semantics.
"""

__version__ = "1.0.0"
