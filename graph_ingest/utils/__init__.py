"""Shared helpers for the ingestion service."""
