"""OAuth 2.1 authorization server, consents and bearer authentication."""
