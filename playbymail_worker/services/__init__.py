"""Business logic for the turn sheet pipeline."""
