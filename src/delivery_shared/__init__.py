"""Shared building blocks for the delivery services: config, logging, store, events."""
