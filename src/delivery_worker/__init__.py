"""Resilient delivery worker: breaker + retry around channel providers."""
