"""
Test Suite for Taskflow

This package contains all tests for the engine components:
- task model, store, attachment ledger and role gate
- stage engine and revision loop
- notification dispatcher and realtime broadcaster
- HTTP / WebSocket API
"""
