"""Unit tests for the connection registry."""

import asyncio
import uuid

import pytest

from conftest import FakeTransport, make_actor
from refverify.kernel.errors import Unauthorized
from refverify.kernel.models.user import UserRole
from refverify.realtime.registry import CLOSE_DELIVERY_FAILED, ConnectionRegistry, channels_for


def resolver(principals: dict):
    async def resolve(token: str):
        try:
            return principals[token]
        except KeyError:
            raise Unauthorized("Invalid or expired token") from None
    return resolve


@pytest.fixture
def gh_verifier_actor():
    return make_actor(UserRole.VERIFIER, "GH")


@pytest.fixture
def registry(gh_verifier_actor):
    return ConnectionRegistry(resolve=resolver({"good": gh_verifier_actor}), handshake_timeout=0.2)


class TestChannels:

    def test_verifier_gets_country_channel(self):
        who = make_actor(UserRole.VERIFIER, "GH")
        assert channels_for(who) == {f"user:{who.user_id}", "role:verifier", "country:GH"}

    def test_contributor_has_no_country_channel(self):
        who = make_actor(UserRole.CONTRIBUTOR, "GH")
        assert channels_for(who) == {f"user:{who.user_id}", "role:contributor"}


class TestConnect:

    @pytest.mark.asyncio
    async def test_valid_token_admitted(self, registry, gh_verifier_actor):
        conn = await registry.connect(FakeTransport(), "good")
        assert registry.get(conn.connection_id) is conn
        assert registry.is_online(gh_verifier_actor.user_id)
        assert "country:GH" in registry.channels_of(conn.connection_id)

    @pytest.mark.asyncio
    async def test_unknown_token_refused(self, registry):
        with pytest.raises(Unauthorized):
            await registry.connect(FakeTransport(), "bad")
        assert len(registry) == 0

    @pytest.mark.asyncio
    async def test_missing_token_refused(self, registry):
        with pytest.raises(Unauthorized):
            await registry.connect(FakeTransport(), None)

    @pytest.mark.asyncio
    async def test_awaitable_credential(self, registry):
        async def first_frame():
            return "good"

        conn = await registry.connect(FakeTransport(), first_frame())
        assert registry.get(conn.connection_id) is not None

    @pytest.mark.asyncio
    async def test_handshake_timeout(self, registry):
        async def never():
            await asyncio.sleep(10)
            return "good"

        with pytest.raises(Unauthorized):
            await registry.connect(FakeTransport(), never())
        assert len(registry) == 0


class TestRemoval:

    def test_remove_is_idempotent(self, registry, gh_verifier_actor):
        conn = registry.admit(FakeTransport(), gh_verifier_actor)
        assert registry.remove(conn.connection_id) is conn
        assert registry.remove(conn.connection_id) is None
        assert not registry.is_online(gh_verifier_actor.user_id)
        assert registry.connections_in(["country:GH", "role:verifier"]) == []

    def test_user_stays_online_while_any_connection_remains(self, registry, gh_verifier_actor):
        first = registry.admit(FakeTransport(), gh_verifier_actor)
        registry.admit(FakeTransport(), gh_verifier_actor)
        registry.remove(first.connection_id)
        assert registry.is_online(gh_verifier_actor.user_id)
        assert len(registry.connections_for_user(gh_verifier_actor.user_id)) == 1

    @pytest.mark.asyncio
    async def test_force_disconnect_closes_every_tab(self, registry, gh_verifier_actor):
        tabs = [FakeTransport(), FakeTransport()]
        for tab in tabs:
            registry.admit(tab, gh_verifier_actor)
        other = registry.admit(FakeTransport(), make_actor(UserRole.ADMIN, "US"))

        closed = await registry.force_disconnect(gh_verifier_actor.user_id)

        assert closed == 2
        assert [t.closed_with for t in tabs] == [4003, 4003]
        assert not registry.is_online(gh_verifier_actor.user_id)
        assert registry.get(other.connection_id) is other

    @pytest.mark.asyncio
    async def test_force_disconnect_unknown_user(self, registry):
        assert await registry.force_disconnect(uuid.uuid4()) == 0

    @pytest.mark.asyncio
    async def test_drop_closes_only_live_connections(self, registry, gh_verifier_actor):
        transport = FakeTransport()
        conn = registry.admit(transport, gh_verifier_actor)

        assert await registry.drop([conn.connection_id, "gone"]) == 1
        assert transport.closed_with == CLOSE_DELIVERY_FAILED
        assert await registry.drop([conn.connection_id]) == 0

    @pytest.mark.asyncio
    async def test_close_all(self, registry, gh_verifier_actor):
        transport = FakeTransport()
        registry.admit(transport, gh_verifier_actor)
        await registry.close_all()
        assert len(registry) == 0
        assert transport.closed_with == 1001


class TestCounts:

    def test_counts_are_per_distinct_user(self, registry):
        gh = make_actor(UserRole.VERIFIER, "GH")
        fr = make_actor(UserRole.VERIFIER, "FR")
        boss = make_actor(UserRole.ADMIN, "GH")
        writer = make_actor(UserRole.CONTRIBUTOR, "GH")
        for who in (gh, gh, fr, boss, writer):
            registry.admit(FakeTransport(), who)

        assert registry.count_by_role() == {"verifier": 2, "admin": 1, "contributor": 1}
        # Contributors are not counted per country
        assert registry.count_by_country() == {"GH": 2, "FR": 1}
        stats = registry.stats()
        assert stats["total_connections"] == 5
        assert stats["online_users"] == 4

    def test_connections_in_deduplicates(self, registry, gh_verifier_actor):
        conn = registry.admit(FakeTransport(), gh_verifier_actor)
        found = registry.connections_in(["role:verifier", "country:GH", f"user:{gh_verifier_actor.user_id}"])
        assert found == [conn]
