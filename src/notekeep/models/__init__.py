"""Data models for the notekeep store."""
