"""Provider clients (Helius websocket stream and REST metadata)."""
