"""
Capital Module

Equity aggregation and snapshot publishing.
"""
