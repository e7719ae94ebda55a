#!/usr/bin/env python3
"""
jamon session service.
Signed cookie sessions, CSRF issuance, identity verification and logout revocation.
"""

import argparse
import json
import logging
import secrets
import sys

# Configure logging
logging.basicConfig(
    level=logging.INFO, format="%(asctime)s - %(name)s - %(levelname)s - %(message)s", stream=sys.stderr
)

#
# NOTE: Keep jamon imports lazy (inside functions) so `--gen-secret` works without
# the web stack configured.
#


def describe_config() -> dict:
    """Non-secret view of the effective configuration."""
    from jamon.auth.config import load_auth_config

    cfg = load_auth_config()
    return {
        "sessionStore": cfg.session_store,
        "sessionMemoryMaxRecords": cfg.session_memory_max_records,
        "sessionSecretSet": bool(cfg.session_secret),
        "sessionTtlSeconds": cfg.session_ttl_seconds,
        "cookieSecure": cfg.cookie_secure,
        "csrfEnforce": cfg.csrf_enforce,
        "cachePublicMaxAge": cfg.cache_public_max_age,
        "idpConfigured": cfg.idp_configured,
        "idpIssuer": cfg.idp_issuer,
        "idpAudience": cfg.idp_audience,
        "idpRevocationCheck": bool(cfg.idp_account_url),
        "idpRevokeConfigured": bool(cfg.idp_revoke_url),
    }


def main():
    """CLI entry point."""
    parser = argparse.ArgumentParser(
        description="Session lifecycle service (login, CSRF, logout with upstream revocation)",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Generate a signing secret for AUTH_SESSION_SECRET
  python main.py --gen-secret

  # Show the effective (non-secret) configuration
  python main.py --check-config

  # Run the HTTP server
  python main.py --serve --port 8080
        """,
    )
    parser.add_argument("--serve", action="store_true", help="Run the HTTP server")
    parser.add_argument("--host", default="0.0.0.0", help="Server bind host (default: 0.0.0.0)")
    parser.add_argument("--port", type=int, default=8080, help="Server listen port (default: 8080)")
    parser.add_argument("--gen-secret", action="store_true", help="Print a random session signing secret")
    parser.add_argument(
        "--check-config",
        action="store_true",
        help="Print the effective configuration (secrets omitted); exit 1 if sessions cannot be signed",
    )

    args = parser.parse_args()

    if args.gen_secret:
        print(secrets.token_urlsafe(48))
        return

    if args.check_config:
        summary = describe_config()
        print(json.dumps(summary, indent=2))
        if not summary["sessionSecretSet"]:
            print("AUTH_SESSION_SECRET is not set", file=sys.stderr)
            sys.exit(1)
        return

    if args.serve:
        from jamon.api.server import run

        run(host=args.host, port=args.port)
        return

    parser.print_help()


if __name__ == "__main__":
    main()
