"""HTTP and WebSocket transport for ragchat."""
