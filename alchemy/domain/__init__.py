"""Domain layer (pure logic).

- Keep business/game rules and calculations here.
- Avoid I/O: no DB sessions, no HTTP/FastAPI, no Redis.
- Prefer deterministic functions (time/random passed in as arguments if needed).
"""
