"""Data models for Chronicle Notes."""
