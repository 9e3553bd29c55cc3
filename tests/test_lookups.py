import json

import httpx
import pytest
from ldap3 import Server, Connection, MOCK_SYNC

from membership_resolver import LookupFailed, PrincipalNotFound, PrincipalRef, resolve_groups
from membership_resolver.config import LdapConfig
from membership_resolver.graph.client import GraphAPIError, GraphClient
from membership_resolver.lookup import (
    DirectoryLookup,
    GraphDirectoryLookup,
    InMemoryDirectory,
    LdapDirectoryLookup,
    RetryingLookup,
)
from membership_resolver.lookup.ldap import group_name_from_dn


# ── In-memory directory ────────────────────────────────────────────────────

def test_in_memory_directory_satisfies_protocol():
    assert isinstance(InMemoryDirectory(), DirectoryLookup)


@pytest.mark.asyncio
async def test_in_memory_directory_from_file(tmp_path):
    path = tmp_path / "directory.json"
    path.write_text(json.dumps({
        "groups": {"g-sales": "Sales", "g-all": "All Staff"},
        "principals": ["alice"],
        "edges": {"alice": ["g-sales"], "g-sales": ["g-all"]},
    }))

    d = InMemoryDirectory.from_file(path)
    parents = await d.get_parent_groups(PrincipalRef("alice"))

    assert [(g.id, g.name) for g in parents] == [("g-sales", "Sales")]
    assert await d.get_parent_groups(PrincipalRef("g-all")) == []
    with pytest.raises(PrincipalNotFound):
        await d.get_parent_groups(PrincipalRef("bob"))


def test_in_memory_directory_rejects_bad_edges():
    with pytest.raises(ValueError):
        InMemoryDirectory.from_dict({"edges": ["alice", "g1"]})


def test_add_membership_is_idempotent():
    d = InMemoryDirectory()
    d.add_membership("alice", "g1", name="Group One")
    d.add_membership("alice", "g1")

    assert d.edges == {"alice": ["g1"]}
    assert d.names == {"g1": "Group One"}


# ── Retry wrapper ──────────────────────────────────────────────────────────

class FlakyLookup:
    def __init__(self, failures, error=None):
        self.failures = failures
        self.error = error
        self.calls = 0

    async def get_parent_groups(self, principal):
        self.calls += 1
        if self.calls <= self.failures:
            raise self.error or LookupFailed(principal, ConnectionError("reset"))
        return [PrincipalRef("g1")]


@pytest.mark.asyncio
async def test_retrying_lookup_recovers():
    flaky = FlakyLookup(failures=2)
    lookup = RetryingLookup(flaky, max_retries=3, initial_backoff=0)

    parents = await lookup.get_parent_groups(PrincipalRef("alice"))

    assert parents == [PrincipalRef("g1")]
    assert flaky.calls == 3


@pytest.mark.asyncio
async def test_retrying_lookup_gives_up():
    flaky = FlakyLookup(failures=10)
    lookup = RetryingLookup(flaky, max_retries=2, initial_backoff=0)

    with pytest.raises(LookupFailed):
        await lookup.get_parent_groups(PrincipalRef("alice"))
    assert flaky.calls == 3


@pytest.mark.asyncio
async def test_retrying_lookup_does_not_retry_not_found():
    flaky = FlakyLookup(failures=10, error=PrincipalNotFound("alice"))
    lookup = RetryingLookup(flaky, max_retries=5, initial_backoff=0)

    with pytest.raises(PrincipalNotFound):
        await lookup.get_parent_groups(PrincipalRef("alice"))
    assert flaky.calls == 1


# ── Microsoft Graph ────────────────────────────────────────────────────────

MEMBER_OF = "/memberOf/microsoft.graph.group"


def graph_handler(pages, status=None, calls=None):
    """
    pages: {principal id: [page, page, ...]} where each page is a list of groups.
    status: {principal id: http status} to force errors.
    """
    status = status or {}

    def handler(request: httpx.Request) -> httpx.Response:
        if calls is not None:
            calls.append(request)
        path = request.url.path
        assert path.startswith("/v1.0/directoryObjects/") and path.endswith(MEMBER_OF)
        principal = path[len("/v1.0/directoryObjects/"):-len(MEMBER_OF)]

        if principal in status:
            code = status[principal]
            return httpx.Response(code, json={"error": {"message": f"status {code}"}})
        if principal not in pages:
            return httpx.Response(404, json={"error": {"message": "Resource does not exist"}})

        page_no = int(request.url.params.get("$skiptoken", "0"))
        chunks = pages[principal]
        body = {"value": chunks[page_no] if chunks else []}
        if page_no + 1 < len(chunks):
            body["@odata.nextLink"] = (
                f"https://graph.microsoft.com/v1.0/directoryObjects/{principal}{MEMBER_OF}"
                f"?$skiptoken={page_no + 1}"
            )
        return httpx.Response(200, json=body)

    return handler


def graph_client(handler, **kwargs):
    return GraphClient(
        access_token="token",
        transport=httpx.MockTransport(handler),
        initial_backoff=0,
        **kwargs,
    )


@pytest.mark.asyncio
async def test_graph_lookup_follows_pagination_and_maps_groups():
    calls = []
    pages = {
        "u1": [
            [{"id": "g1", "displayName": "Sales", "mail": "sales@contoso.com", "securityEnabled": True}],
            [{"id": "g2", "displayName": "Finance", "mail": None, "securityEnabled": True}],
        ],
    }

    async with graph_client(graph_handler(pages, calls=calls)) as client:
        parents = await GraphDirectoryLookup(client).get_parent_groups(PrincipalRef("u1"))

    assert [(g.id, g.name) for g in parents] == [("g1", "Sales"), ("g2", "Finance")]
    assert parents[0].attributes["mail"] == "sales@contoso.com"
    assert "displayName" not in parents[0].attributes
    assert len(calls) == 2
    assert "$select" in calls[0].url.params


@pytest.mark.asyncio
async def test_graph_lookup_fails_when_page_cap_is_hit(monkeypatch):
    monkeypatch.setattr("membership_resolver.graph.client.MAX_PAGES_PER_ENDPOINT", 2)
    pages = {
        "u1": [[{"id": f"g{i}", "displayName": f"Group {i}"}] for i in range(3)],
        "u2": [[{"id": f"g{i}", "displayName": f"Group {i}"}] for i in range(2)],
    }

    async with graph_client(graph_handler(pages)) as client:
        lookup = GraphDirectoryLookup(client)

        with pytest.raises(LookupFailed) as exc:
            await lookup.get_parent_groups(PrincipalRef("u1"))
        assert isinstance(exc.value.cause, GraphAPIError)

        parents = await lookup.get_parent_groups(PrincipalRef("u2"))
        assert [g.id for g in parents] == ["g0", "g1"]


def test_graph_lookup_select_is_not_shared():
    client = GraphClient(access_token="token")
    first = GraphDirectoryLookup(client)
    first.select.append("description")

    assert "description" not in GraphDirectoryLookup(client).select
    assert GraphDirectoryLookup(client, select=["id"]).select == ["id"]


@pytest.mark.asyncio
async def test_graph_lookup_maps_errors():
    handler = graph_handler({}, status={"denied": 403, "broken": 500})

    async with graph_client(handler, max_retries=0) as client:
        lookup = GraphDirectoryLookup(client)

        with pytest.raises(PrincipalNotFound):
            await lookup.get_parent_groups(PrincipalRef("missing"))

        with pytest.raises(LookupFailed) as exc:
            await lookup.get_parent_groups(PrincipalRef("denied"))
        assert isinstance(exc.value.cause, GraphAPIError)
        assert exc.value.cause.status_code == 403

        with pytest.raises(LookupFailed):
            await lookup.get_parent_groups(PrincipalRef("broken"))


@pytest.mark.asyncio
async def test_graph_client_retries_throttled_requests():
    attempts = []

    def handler(request):
        attempts.append(request)
        if len(attempts) == 1:
            return httpx.Response(429, headers={"Retry-After": "0"})
        return httpx.Response(200, json={"value": [{"id": "g1", "displayName": "Sales"}]})

    async with graph_client(handler) as client:
        items = await client.get_all_pages("directoryObjects/u1/memberOf/microsoft.graph.group")
        stats = client.get_stats()

    assert items == [{"id": "g1", "displayName": "Sales"}]
    assert stats == {"total_requests": 2, "throttle_events": 1}


@pytest.mark.asyncio
async def test_graph_client_requires_context():
    client = GraphClient(access_token="token")
    with pytest.raises(RuntimeError):
        await client.get("me")


@pytest.mark.asyncio
async def test_resolve_against_graph():
    pages = {
        "u1": [[{"id": "g1", "displayName": "Sales"}]],
        "g1": [[{"id": "g2", "displayName": "All Staff"}, {"id": "g1", "displayName": "Sales"}]],
        "g2": [[]],
    }

    async with graph_client(graph_handler(pages)) as client:
        result = await resolve_groups("u1", GraphDirectoryLookup(client))

    assert result.names() == ["All Staff", "Sales"]


@pytest.mark.asyncio
async def test_graph_find_principal_by_upn():
    def handler(request):
        assert request.url.path == "/v1.0/users/alice@contoso.com"
        return httpx.Response(200, json={"id": "u1"})

    async with graph_client(handler) as client:
        ref = await GraphDirectoryLookup(client).find_principal("alice@contoso.com")

    assert ref == PrincipalRef("u1")


# ── Active Directory (LDAP) ────────────────────────────────────────────────

BIND_DN = "cn=svc-reader,ou=service,dc=corp,dc=local"
ALICE = "cn=alice,ou=staff,dc=corp,dc=local"
SALES = "cn=sales,ou=groups,dc=corp,dc=local"
STAFF = "cn=all staff,ou=groups,dc=corp,dc=local"


@pytest.fixture
def ldap_lookup():
    server = Server("fake-dc")
    connection = Connection(server, user=BIND_DN, password="secret", client_strategy=MOCK_SYNC)
    connection.strategy.add_entry("dc=corp,dc=local", {"objectClass": "domain"})
    connection.strategy.add_entry(BIND_DN, {"objectClass": "person", "userPassword": "secret"})
    connection.strategy.add_entry(ALICE, {
        "objectClass": "person",
        "sAMAccountName": "alice",
        "memberOf": [SALES],
    })
    connection.strategy.add_entry(SALES, {"objectClass": "group", "memberOf": [STAFF]})
    connection.strategy.add_entry(STAFF, {"objectClass": "group"})
    connection.bind()
    lookup = LdapDirectoryLookup(LdapConfig(server="fake-dc", base_dn="dc=corp,dc=local"), connection)
    yield lookup
    lookup.close()


def test_group_name_from_dn():
    assert group_name_from_dn("CN=Domain Admins,CN=Users,DC=corp,DC=local") == "Domain Admins"


@pytest.mark.asyncio
async def test_ldap_lookup_reads_member_of(ldap_lookup):
    parents = await ldap_lookup.get_parent_groups(PrincipalRef(ALICE))

    assert [g.name for g in parents] == ["sales"]
    assert parents[0].attributes["distinguishedName"] == SALES


@pytest.mark.asyncio
async def test_ldap_lookup_not_found(ldap_lookup):
    with pytest.raises(PrincipalNotFound):
        await ldap_lookup.get_parent_groups(PrincipalRef("cn=ghost,ou=staff,dc=corp,dc=local"))


@pytest.mark.asyncio
async def test_resolve_against_ldap(ldap_lookup):
    start = ldap_lookup.find_principal("alice")
    result = await resolve_groups(start, ldap_lookup)

    assert result.names() == ["all staff", "sales"]


def test_ldap_lookup_requires_connection():
    lookup = LdapDirectoryLookup(LdapConfig(server="dc01"))
    with pytest.raises(RuntimeError):
        lookup.find_principal("alice")
