"""Webhook ingestion and outbound send pipelines."""
