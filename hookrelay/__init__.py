"""hookrelay - relays chat messaging events to registered webhooks."""
__version__ = "0.1.0"
