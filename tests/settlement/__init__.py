"""
Tests for the Settlement Engine.

This package contains tests for:
- Ledger, price source, clock and configuration
- Outcome rules per instrument
- Position store and lifecycle transitions
- Trade request routing and fund reservation
- Scheduler settlement, triggers and outcome mode
- Engine facade, persistence and HTTP API
"""
