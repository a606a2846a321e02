"""
OIDC Package

This package handles browser login through an external OpenID Connect
provider and the cookie session that remembers the logged-in user.

Modules:
- routes: Public endpoints (/login, /callback, /userinfo, /logout)
- client: Provider discovery, code exchange and ID token verification
- session: Encrypted, signed session cookies

The login flow:
1. Browser hits /login, receives state + nonce in its session cookie
2. User authenticates with the provider
3. Provider redirects to /callback with code + state
4. Server verifies state and ID token, provisions the wallet on first login
5. Session cookie now carries the user's subject
"""
