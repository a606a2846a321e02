"""
Wallet Server Application

FastAPI service that logs users in through an OIDC provider and provisions
their wallet key stores and encrypted data vaults on first login.

Packages:
- oidc: Login, callback, user info and logout endpoints, cookie sessions
- provisioning: KMS / EDV / authorization server orchestration
- store: Durable user token records
"""
