"""Intents, the intent queue, shared state and the dispatcher that connects them."""
