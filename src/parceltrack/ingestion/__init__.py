"""Ingestion layer.

This package contains the adapters that receive driver position reports
(WebSocket, MQTT) and turn them into validated, enriched samples.
"""

__all__: list[str] = []
