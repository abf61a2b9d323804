"""HTTP API exposing the calendar aggregation service."""
