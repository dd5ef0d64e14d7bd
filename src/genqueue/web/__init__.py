"""HTTP/websocket surface."""
