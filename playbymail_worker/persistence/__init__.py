"""Store helpers over the ORM models."""
