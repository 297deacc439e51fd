"""Signaling relay: room registry and websocket server."""
