"""Firmware storage and the verification pipeline."""
