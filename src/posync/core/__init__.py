"""Core utilities: errors, structured logging, rate limiting."""
