"""
Session authentication helpers.

Design goals:
- Provider-agnostic identity verification behind a small Protocol.
- Cookie-based session (HttpOnly, signed) for same-origin pages.
- Anonymous responses stay byte-identical so they can be served from a shared cache.
- Logout revokes upstream first; the local session is only destroyed afterwards.
"""
