"""
Background jobs and CLI entrypoints for mail ingestion.
"""
