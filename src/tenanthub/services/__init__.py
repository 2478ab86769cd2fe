"""Registry services (database-backed)."""
