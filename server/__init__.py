"""HTTP/WebSocket boundary around the e2ee core."""
