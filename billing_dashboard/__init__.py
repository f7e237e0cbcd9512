"""Billing dashboard API and revenue aggregation engine."""
