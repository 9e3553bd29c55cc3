"""
On-premises Active Directory lookup over LDAP.

Principals are identified by distinguished name. A principal's immediate
parents are the values of its memberOf attribute; the group name is the
value of the leading RDN (the CN).

Note: AD does not list the primary group (usually Domain Users) in memberOf,
so it is not part of the resolved set either.
"""

from __future__ import annotations

import asyncio
import logging
import threading
from typing import Optional

from ldap3 import Server, Connection, ALL, BASE, SUBTREE, NTLM, SIMPLE
from ldap3.core.exceptions import LDAPException
from ldap3.utils.conv import escape_filter_chars
from ldap3.utils.dn import parse_dn

from ..config import LdapConfig
from ..errors import LookupFailed, PrincipalNotFound
from ..models import GroupRecord, PrincipalRef

logger = logging.getLogger("membership_resolver.lookup.ldap")

LDAP_NO_SUCH_OBJECT = 32


def group_name_from_dn(dn: str) -> str:
    """CN=Sales,OU=Groups,DC=corp,DC=local -> Sales"""
    try:
        rdns = parse_dn(dn)
    except LDAPException:
        return dn
    return rdns[0][1] if rdns else dn


class LdapDirectoryLookup:
    """
    DirectoryLookup backed by a single ldap3 connection.
    ldap3's synchronous strategy is not thread-safe, so calls are serialized
    on a lock and run in a worker thread to keep the event loop free.
    """

    def __init__(self, config: LdapConfig, connection: Optional[Connection] = None):
        self.config = config
        self.connection = connection
        self._lock = threading.Lock()

    def connect(self) -> Connection:
        """Bind to the configured server (NTLM for DOMAIN\\user, simple bind otherwise)."""
        server = Server(
            self.config.server,
            port=self.config.effective_port,
            use_ssl=self.config.use_ssl,
            get_info=ALL,
            connect_timeout=self.config.timeout,
        )
        kwargs = {"auto_bind": True, "receive_timeout": self.config.timeout}
        if self.config.user:
            kwargs["user"] = self.config.user
            kwargs["password"] = self.config.password
            kwargs["authentication"] = NTLM if "\\" in self.config.user else SIMPLE

        logger.info(f"Connecting to {self.config.server}:{self.config.effective_port}")
        try:
            self.connection = Connection(server, **kwargs)
        except LDAPException as e:
            raise LookupFailed(PrincipalRef(self.config.server), e) from e
        return self.connection

    def close(self):
        if self.connection is not None:
            self.connection.unbind()
            self.connection = None

    def __enter__(self):
        if self.connection is None:
            self.connect()
        return self

    def __exit__(self, *args):
        self.close()

    # ── Lookup ──────────────────────────────────────────────────────────────

    async def get_parent_groups(self, principal: PrincipalRef) -> list[GroupRecord]:
        return await asyncio.to_thread(self._read_member_of, principal)

    def _read_member_of(self, principal: PrincipalRef) -> list[GroupRecord]:
        if self.connection is None:
            raise RuntimeError("LdapDirectoryLookup not connected. Call connect() first.")

        with self._lock:
            try:
                found = self.connection.search(
                    search_base=principal.id,
                    search_filter="(objectClass=*)",
                    search_scope=BASE,
                    attributes=["memberOf"],
                )
            except LDAPException as e:
                raise LookupFailed(principal, e) from e

            result_code = (self.connection.result or {}).get("result", 0)
            if result_code == LDAP_NO_SUCH_OBJECT:
                raise PrincipalNotFound(principal)
            if not found or not self.connection.entries:
                if result_code:
                    description = self.connection.result.get("description", "")
                    raise LookupFailed(principal, LDAPException(f"{result_code} {description}"))
                raise PrincipalNotFound(principal)

            attrs = self.connection.entries[0].entry_attributes_as_dict

        parents = [str(dn) for dn in attrs.get("memberOf", [])]
        logger.debug(f"{principal}: {len(parents)} direct parent group(s)")
        return [
            GroupRecord(
                ref=PrincipalRef(dn, kind="group"),
                name=group_name_from_dn(dn),
                attributes={"distinguishedName": dn},
            )
            for dn in parents
        ]

    def find_principal(self, account_name: str) -> PrincipalRef:
        """Resolve a sAMAccountName or UPN to the principal's distinguished name."""
        if self.connection is None:
            raise RuntimeError("LdapDirectoryLookup not connected. Call connect() first.")

        base_dn = self.config.base_dn or self._default_naming_context()
        value = escape_filter_chars(account_name)
        search_filter = f"(|(sAMAccountName={value})(userPrincipalName={value}))"
        with self._lock:
            try:
                self.connection.search(
                    search_base=base_dn,
                    search_filter=search_filter,
                    search_scope=SUBTREE,
                    attributes=["distinguishedName"],
                    size_limit=2,
                )
            except LDAPException as e:
                raise LookupFailed(PrincipalRef(account_name), e) from e
            entries = list(self.connection.entries)

        if not entries:
            raise PrincipalNotFound(account_name)
        if len(entries) > 1:
            raise LookupFailed(
                PrincipalRef(account_name),
                LDAPException(f"ambiguous account name, {len(entries)} matches"),
            )
        return PrincipalRef(entries[0].entry_dn)

    def _default_naming_context(self) -> str:
        info = self.connection.server.info
        contexts = info.other.get("defaultNamingContext", []) if info else []
        if not contexts:
            raise LookupFailed(
                PrincipalRef(self.config.server),
                LDAPException("no base_dn configured and server did not publish defaultNamingContext"),
            )
        return contexts[0]
