"""
FX Rate Aggregator Service
Keeps a table of near-realtime currency exchange rates drawn from redundant rate sources.
"""

__version__ = "1.0.0"
__author__ = "FX Rate Aggregator Team"
__description__ = "FX rate aggregation service with failover and robust consensus calculators"
