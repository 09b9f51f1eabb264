"""Tests for room ids, the presence registry and the connection hub."""
import pytest

from app.chat.hub import ConnectionHub
from app.chat.presence import PresenceRegistry
from app.chat.rooms import RoomRouter
from app.chat.schemas import ChatMessage, PresenceStatus


class TestRoomRouter:
    """Tests for RoomRouter ids."""

    @pytest.mark.parametrize("a,b", [
        ("u1", "u2"),
        ("alice", "Bob"),
        ("10", "9"),
        ("same", "same"),
    ])
    def test_direct_room_is_symmetric(self, a, b):
        rooms = RoomRouter()
        assert rooms.direct_room_id(a, b) == rooms.direct_room_id(b, a)

    def test_direct_room_format(self):
        assert RoomRouter().direct_room_id("u2", "u1") == "room_u1_u2"

    def test_global_room_is_configurable(self):
        assert RoomRouter("lobby").global_room_id() == "lobby"

    def test_room_for_message(self):
        rooms = RoomRouter()

        assert rooms.room_for(ChatMessage(senderId="u1")) == "globalChat"
        assert rooms.room_for(ChatMessage(senderId="u2", recipientId="u1")) == "room_u1_u2"


class TestPresenceRegistry:
    """Tests for PresenceRegistry."""

    def test_join_upserts(self):
        registry = PresenceRegistry()
        registry.join("u1", "c1", "Alice")
        registry.join("u1", "c2", "Alice")

        assert len(registry) == 1
        assert registry.connection_for("u1") == "c2"

    def test_leave_keeps_entry_offline(self):
        registry = PresenceRegistry()
        registry.join("u1", "c1", "Alice")

        entry = registry.leave("u1")

        assert entry.status == PresenceStatus.OFFLINE
        assert entry.connectionId is None
        assert entry.lastSeen is not None
        assert registry.connection_for("u1") is None
        assert len(registry) == 1

    def test_leave_unknown_user(self):
        assert PresenceRegistry().leave("ghost") is None

    def test_disconnect_of_other_connection_ignored(self):
        registry = PresenceRegistry()
        registry.join("u1", "c2", "Alice")

        assert registry.disconnect("u1", "c1") is None
        assert registry.get("u1").status == PresenceStatus.ONLINE

    def test_disconnect_of_current_connection(self):
        registry = PresenceRegistry()
        registry.join("u1", "c1", "Alice")

        entry = registry.disconnect("u1", "c1")

        assert entry.status == PresenceStatus.OFFLINE

    def test_snapshot_excludes_user(self):
        registry = PresenceRegistry()
        registry.join("u1", "c1", "Alice")
        registry.join("u2", "c2", "Bob")

        assert [e.userId for e in registry.snapshot(exclude_user_id="u1")] == ["u2"]


class FakeWebSocket:
    def __init__(self):
        self.sent = []

    async def send_json(self, data):
        self.sent.append(data)


class TestConnectionHub:
    """Tests for ConnectionHub membership and delivery."""

    def test_join_requires_registration(self):
        hub = ConnectionHub()
        hub.join("c1", "globalChat")
        assert hub.get_room_size("globalChat") == 0

    def test_unregister_releases_rooms(self):
        hub = ConnectionHub()
        hub.register("c1", FakeWebSocket())
        hub.join("c1", "globalChat")
        hub.join("c1", "room_u1_u2")

        hub.unregister("c1")

        assert hub.members("globalChat") == set()
        assert hub.connection_rooms == {}
        assert hub.room_members == {}

    @pytest.mark.asyncio
    async def test_broadcast_only_reaches_room(self):
        hub = ConnectionHub()
        inside, outside = FakeWebSocket(), FakeWebSocket()
        hub.register("c1", inside)
        hub.register("c2", outside)
        hub.join("c1", "room_u1_u2")

        await hub.broadcast({"type": "ping"}, "room_u1_u2")

        assert inside.sent == [{"type": "ping"}]
        assert outside.sent == []

    @pytest.mark.asyncio
    async def test_send_to_unknown_connection(self):
        assert await ConnectionHub().send_to("nope", {"type": "ping"}) is False
