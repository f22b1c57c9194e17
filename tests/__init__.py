"""
Test Suite for Pipeline Controller

This package contains all tests for the controller components:
- parsing, aggregation, cache and metrics
- access control and scheduling
- realtime broadcasting and the HTTP/WebSocket API
"""
