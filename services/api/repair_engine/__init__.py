"""Repair marketplace matching, scoring and incentive settlement engine."""
