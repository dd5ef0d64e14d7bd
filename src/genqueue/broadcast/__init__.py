"""Live fan-out of task state changes to websocket clients."""
