"""Outbound delivery transports."""
