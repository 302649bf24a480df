"""Core domain modules.

- market_data: venue feed connectors (discovery, realtime socket, reconnect, rotation)
- orderbook: book store, cross-venue aggregation, outcome inversion and quotes
- health: feed health checks
- config: feed endpoints and timing
- types: shared book, quote and event types
"""
