"""Ego: session tokens, API keys and identity-provider SSO."""
