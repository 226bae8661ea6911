"""Sinks the sync pipeline can deliver to."""
