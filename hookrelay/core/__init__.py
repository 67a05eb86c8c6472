"""Core runtime plumbing for hookrelay."""
