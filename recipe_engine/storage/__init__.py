"""Repositories and durable asset storage."""
