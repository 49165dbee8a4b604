"""Data models for comparison sessions, decisions and reviewer quality."""
