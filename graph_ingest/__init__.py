"""Graph ingest application package."""
