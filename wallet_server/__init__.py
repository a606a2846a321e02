"""Wallet server: OIDC login and wallet provisioning."""
