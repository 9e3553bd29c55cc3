"""
Nested Group Membership Resolver — command-line entry point

Usage:
    python -m membership_resolver alice --directory-file directory.json
    python -m membership_resolver <object-id | upn> --backend graph --tenant-id ... --client-id ...
    python -m membership_resolver "CN=Alice,OU=Staff,DC=corp,DC=local" --backend ldap --ldap-server dc01
    python -m membership_resolver alice --config resolver.json --best-effort --format json

Exit status: 0 resolved, 1 error, 2 cancelled or timed out, 3 resolved with omissions.

This tool is STRICTLY READ-ONLY. It will NEVER modify the directory.
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import os
import sys
from pathlib import Path
from typing import Optional

from .config import ResolverConfig, CertificateAuth, DelegatedAuth, BACKENDS
from .errors import CancelledOrTimedOut, ResolverError
from .models import ResolvedSet
from .resolver import resolve_groups
from .presentation import render_json, render_table
from .lookup import InMemoryDirectory, GraphDirectoryLookup, LdapDirectoryLookup
from .graph.client import GraphClient
from .auth.authenticator import Authenticator, AuthenticationError

logger = logging.getLogger("membership_resolver.cli")

LDAP_PASSWORD_ENV = "MEMBERSHIP_RESOLVER_LDAP_PASSWORD"

EXIT_OK = 0
EXIT_ERROR = 1
EXIT_CANCELLED = 2
EXIT_INCOMPLETE = 3


def parse_args(argv: Optional[list[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="membership_resolver",
        description="Resolve nested group memberships of a directory principal (READ-ONLY)",
    )
    parser.add_argument(
        "principal",
        help="Starting principal: object ID, distinguished name, UPN or account name",
    )
    parser.add_argument(
        "--config", "-c",
        type=Path,
        help="Path to JSON configuration file",
    )
    parser.add_argument(
        "--backend", "-b",
        choices=BACKENDS,
        default=None,
        help="Directory backend (default: from config, else 'file')",
    )
    parser.add_argument(
        "--directory-file",
        type=Path,
        help="JSON directory snapshot for the 'file' backend",
    )

    graph = parser.add_argument_group("Microsoft Graph")
    graph.add_argument("--tenant-id", type=str, default=None, help="Tenant ID (GUID)")
    graph.add_argument("--client-id", type=str, default=None, help="App registration client ID (GUID)")
    graph.add_argument(
        "--cert-path",
        type=Path,
        help="Path to base64-encoded PFX (password from MEMBERSHIP_RESOLVER_CERT_PASSWORD)",
    )
    graph.add_argument(
        "--delegated",
        action="store_true",
        help="Use delegated (device-code) authentication instead of certificate",
    )

    ldap = parser.add_argument_group("Active Directory (LDAP)")
    ldap.add_argument("--ldap-server", type=str, default=None, help="Domain controller host name")
    ldap.add_argument("--ldap-base-dn", type=str, default=None, help="Search base for account names")
    ldap.add_argument(
        "--ldap-user",
        type=str,
        default=None,
        help="Bind user, DOMAIN\\user or UPN (password from MEMBERSHIP_RESOLVER_LDAP_PASSWORD)",
    )
    ldap.add_argument("--no-ssl", action="store_true", help="Use plain LDAP (389) instead of LDAPS")

    traversal = parser.add_argument_group("Traversal")
    traversal.add_argument(
        "--best-effort",
        action="store_true",
        help="Keep going when a nested group cannot be expanded (default: strict)",
    )
    traversal.add_argument("--strategy", choices=["breadth", "depth"], default=None)
    traversal.add_argument("--max-concurrency", type=int, default=None, help="Lookups in flight")
    traversal.add_argument("--lookup-timeout", type=float, default=None, help="Seconds per lookup call")
    traversal.add_argument("--timeout", type=float, default=None, help="Seconds for the whole resolution")
    traversal.add_argument("--max-groups", type=int, default=None, help="Abort above this many groups")

    parser.add_argument("--format", "-f", choices=["table", "json"], default="table")
    parser.add_argument("--verbose", "-v", action="store_true", help="Debug logging")
    return parser.parse_args(argv)


def build_config(args: argparse.Namespace) -> ResolverConfig:
    """Build configuration from an optional config file plus CLI overrides."""
    if args.config:
        if not args.config.exists():
            raise ResolverError(f"Config file not found: {args.config}")
        config = ResolverConfig.from_file(str(args.config))
    else:
        config = ResolverConfig()

    if args.backend:
        config.backend = args.backend
    if args.directory_file:
        config.directory_file = str(args.directory_file)
    config.verbose = config.verbose or args.verbose

    # --- Graph credentials ---
    if args.delegated:
        config.auth.mode = "delegated"
    if args.tenant_id and args.client_id:
        if config.auth.mode == "delegated":
            config.auth.delegated = DelegatedAuth(tenant_id=args.tenant_id, client_id=args.client_id)
        else:
            config.auth.certificate = CertificateAuth(
                tenant_id=args.tenant_id,
                client_id=args.client_id,
                certificate_path=str(args.cert_path) if args.cert_path else "./base64.txt",
            )
    elif args.cert_path and config.auth.certificate:
        config.auth.certificate.certificate_path = str(args.cert_path)

    # --- LDAP ---
    if args.ldap_server:
        config.ldap.server = args.ldap_server
    if args.ldap_base_dn:
        config.ldap.base_dn = args.ldap_base_dn
    if args.ldap_user:
        config.ldap.user = args.ldap_user
    if args.no_ssl:
        config.ldap.use_ssl = False
    if not config.ldap.password:
        config.ldap.password = os.environ.get(LDAP_PASSWORD_ENV, "")

    # --- Traversal ---
    t = config.traversal
    if args.best_effort:
        t.mode = "best_effort"
    if args.strategy:
        t.strategy = args.strategy
    if args.max_concurrency is not None:
        t.max_concurrency = args.max_concurrency
    if args.lookup_timeout is not None:
        t.lookup_timeout = args.lookup_timeout
    if args.timeout is not None:
        t.timeout = args.timeout
    if args.max_groups is not None:
        t.max_groups = args.max_groups

    return config


async def run_resolution(config: ResolverConfig, principal: str) -> ResolvedSet:
    """Open the configured directory, resolve, and close it again."""
    options = config.traversal.to_options()

    if config.backend == "file":
        if not config.directory_file:
            raise ResolverError("The 'file' backend needs --directory-file (or directory_file in config).")
        lookup = InMemoryDirectory.from_file(config.directory_file)
        return await resolve_groups(principal, lookup, options=options)

    if config.backend == "ldap":
        if not config.ldap.server:
            raise ResolverError("The 'ldap' backend needs --ldap-server (or ldap.server in config).")
        with LdapDirectoryLookup(config.ldap) as ldap_lookup:
            start = principal if "=" in principal else ldap_lookup.find_principal(principal)
            return await resolve_groups(start, ldap_lookup, options=options)

    # graph
    if config.auth.mode == "certificate" and not config.auth.certificate:
        raise ResolverError("The 'graph' backend needs --tenant-id and --client-id (or auth in config).")
    authenticator = Authenticator(config.auth, certificate_password=config.certificate_password())
    token = authenticator.acquire_token()

    async with GraphClient(access_token=token, max_concurrency=options.max_concurrency) as client:
        graph_lookup = GraphDirectoryLookup(client)
        start = await graph_lookup.find_principal(principal) if "@" in principal else principal
        resolved = await resolve_groups(start, graph_lookup, options=options)
        logger.info(f"Graph client stats: {client.get_stats()}")
        return resolved


def configure_logging(verbose: bool):
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)-8s %(name)s: %(message)s",
        stream=sys.stderr,
    )


def main(argv: Optional[list[str]] = None) -> int:
    """Synchronous entry point for `python -m membership_resolver`."""
    args = parse_args(argv)

    try:
        config = build_config(args)
        configure_logging(config.verbose)
        resolved = asyncio.run(run_resolution(config, args.principal))
    except CancelledOrTimedOut as e:
        print(f"❌ {e}", file=sys.stderr)
        return EXIT_CANCELLED
    except KeyboardInterrupt:
        print("❌ Resolution cancelled.", file=sys.stderr)
        return EXIT_CANCELLED
    except AuthenticationError as e:
        print(f"❌ {e}", file=sys.stderr)
        print("   The app registration needs one of these Graph permissions:", file=sys.stderr)
        for perm, reason in Authenticator.list_required_permissions().items():
            print(f"     - {perm}: {reason}", file=sys.stderr)
        return EXIT_ERROR
    except (ResolverError, ValueError, OSError) as e:
        print(f"❌ {e}", file=sys.stderr)
        return EXIT_ERROR

    if args.format == "json":
        print(render_json(resolved))
    else:
        print(render_table(resolved))

    return EXIT_OK if resolved.is_complete else EXIT_INCOMPLETE


if __name__ == "__main__":
    sys.exit(main())
