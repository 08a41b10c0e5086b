"""Stacy services.

- safety_engine: risk scoring, escalation state machine and the
  signal-ingestion API that drives them
"""
