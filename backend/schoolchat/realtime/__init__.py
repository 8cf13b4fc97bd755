"""Realtime WebSocket channel: event names, hub and endpoint."""
