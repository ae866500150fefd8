"""Script generation session orchestration."""
