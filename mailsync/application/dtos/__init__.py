"""Application DTOs (adapter payloads, credentials, engine results)."""
