"""Core policy engine components."""
