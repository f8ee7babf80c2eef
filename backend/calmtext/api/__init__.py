"""CalmText - HTTP API routes and schemas."""
