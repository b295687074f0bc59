"""Data models for the service broker."""
