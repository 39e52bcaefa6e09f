"""Core infrastructure: models, configuration, state, storage, transport."""
