"""Configuration, permissions and identifiers shared by every session."""
