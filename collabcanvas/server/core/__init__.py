"""Shared server plumbing: hub, dependencies, errors and middleware."""
