"""FastAPI application and rate limiting services."""
