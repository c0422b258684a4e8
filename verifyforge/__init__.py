"""
Verify Forge
============

Adaptive verification and loop-control engine: change classification,
tier selection, monotonic escalation, bounded verify loops with a circuit
breaker, content-addressed caches and advisory anomaly monitoring.
"""

__version__ = "0.3.0"
