"""Rollout dispatcher."""
