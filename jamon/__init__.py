"""Server-side session lifecycle: signed session cookies, CSRF issuance, identity verification and revocation."""
