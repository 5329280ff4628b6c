"""Room manager: roles, player sessions and what gets published."""
import asyncio
import random
from decimal import Decimal

import pytest

from core.exceptions import NotHost, PlayerNotFound, RoomClosed, RoundLocked, UnknownRoom
from core.round_state_machine import RoundStateMachine
from core.session import Role, SessionContext, SessionMirror
from core.transport import NullTransport, meta_topic, player_topic, players_topic
from core.room_manager import RoomSessionManager
from models import Choice, PricePoint, Room, RoundPhase


def test_create_room_binds_host(manager, db):
    room, ctx = manager.create_room(db)

    assert len(room.id) == 6
    assert ctx.role is Role.HOST
    assert ctx.session_token == room.host_token
    assert room.phase == RoundPhase.IDLE
    assert room.round_number == 1
    assert room.price == Decimal("100.00")
    assert [(p.round_number, p.price) for p in manager.price_history(db, room.id)] == [(0, Decimal("100.00"))]


def test_create_room_keeps_given_host_token(manager, db):
    _, ctx = manager.create_room(db, host_token="my-host-token")
    assert ctx.session_token == "my-host-token"


def test_room_codes_are_case_insensitive(manager, db, host):
    assert manager.get_room(db, host.room_id.lower()).id == host.room_id


def test_join_twice_same_identity(manager, db, host, join):
    first, _ = join("alice")
    second, _ = join("alice")
    assert first.id == second.id
    assert len(manager.roster(db, host.room_id)) == 1


def test_join_unknown_room(manager, db):
    with pytest.raises(UnknownRoom):
        manager.join_as_player(db, "NOPE00", "tok", "alice")


def test_player_cannot_run_host_actions(manager, db, host, join):
    _, player_ctx = join("alice")
    with pytest.raises(NotHost):
        manager.start_round(db, player_ctx)
    with pytest.raises(NotHost):
        manager.reveal(db, player_ctx)


def test_forged_host_role_rejected(manager, db, host):
    forged = SessionContext(room_id=host.room_id, session_token="guess", role=Role.HOST)
    with pytest.raises(NotHost):
        manager.start_round(db, forged)


def test_host_cannot_vote(manager, db, host):
    with pytest.raises(NotHost):
        manager.submit_choice(db, host, Choice.BUY)


def test_submit_choice_dropped_while_not_open(manager, db, host, join):
    _, ctx = join("alice")
    assert manager.submit_choice(db, ctx, Choice.BUY) is False

    manager.start_round(db, host)
    assert manager.submit_choice(db, ctx, Choice.BUY) is True

    RoundStateMachine.lock_round(db, host.room_id)
    assert manager.submit_choice(db, ctx, Choice.SELL) is False


def test_submit_choice_before_join(manager, db, host):
    ctx = SessionContext(room_id=host.room_id, session_token="stranger", role=Role.PLAYER)
    manager.start_round(db, host)
    with pytest.raises(PlayerNotFound):
        manager.submit_choice(db, ctx, Choice.BUY)


def test_resume_session_never_creates(manager, db, host, join):
    player, _ = join("alice")

    resumed, room = manager.resume_session(db, host.room_id, "token-alice")
    assert resumed.id == player.id
    assert room.id == host.room_id

    with pytest.raises(PlayerNotFound):
        manager.resume_session(db, host.room_id, "token-bob")
    assert len(manager.roster(db, host.room_id)) == 1


def test_leave_as_host_closes_room(manager, db, host, join):
    _, ctx = join("alice")
    manager.start_round(db, host)

    room = manager.leave_as_host(db, host)
    assert room.closed is True
    assert room.phase == RoundPhase.IDLE

    with pytest.raises(RoomClosed):
        manager.join_as_player(db, host.room_id, "token-bob", "bob")
    with pytest.raises(RoomClosed):
        manager.submit_choice(db, ctx, Choice.BUY)
    with pytest.raises(RoomClosed):
        manager.start_round(db, host)
    with pytest.raises(RoomClosed):
        manager.leave_as_host(db, host)


def test_add_local_player_gets_its_own_token(manager, db, host):
    a = manager.add_local_player(db, host, "Laptop 1")
    b = manager.add_local_player(db, host, "")

    assert a.id != b.id
    assert a.session_token != b.session_token
    assert b.name.startswith("Player-")


def test_random_news_stages_from_pool(manager, db, host):
    news = manager.random_news(db, host, rng=random.Random(7))
    room = manager.get_room(db, host.room_id)
    assert room.news_text == news.text
    assert room.news_impact == news.impact


def test_reset_game(manager, db, host, join):
    _, ctx = join("alice")
    manager.start_round(db, host)
    manager.submit_choice(db, ctx, Choice.BUY)
    manager.reveal(db, host)

    room = manager.reset_game(db, host)

    assert room.round_number == 1
    assert room.phase == RoundPhase.IDLE
    assert room.price == Decimal("100.00")
    assert manager.roster(db, host.room_id) == []
    assert db.query(PricePoint).filter(PricePoint.room_id == host.room_id).count() == 1


def test_reset_rejected_during_settlement(manager, db, host):
    manager.start_round(db, host)
    RoundStateMachine.lock_round(db, host.room_id)
    with pytest.raises(RoundLocked):
        manager.reset_game(db, host)


def test_works_without_realtime(db):
    manager = RoomSessionManager(NullTransport())
    room, host = manager.create_room(db)
    manager.join_as_player(db, room.id, "tok", "solo")
    manager.start_round(db, host)
    manager.submit_choice(db, SessionContext(room.id, "tok", Role.PLAYER), Choice.BUY)

    result = manager.reveal(db, host)
    assert result.price == Decimal("106.00")
    db.expire_all()
    assert db.query(Room).filter(Room.id == room.id).first().round_number == 2
    assert manager.resume_session(db, room.id, "tok")[0].capital == Decimal("106.00")


class TestPublishing:
    """Messages observed by subscribers of the room topics"""

    def test_settlement_fanout_order(self, manager, transport, db, host, join):
        alice, alice_ctx = join("alice")
        _, bob_ctx = join("bob")
        _, carol_ctx = join("carol")

        async def scenario():
            meta = transport.subscribe(meta_topic(host.room_id), players_topic(host.room_id))
            own = transport.subscribe(player_topic(host.room_id, alice.id))

            manager.start_round(db, host)
            manager.submit_choice(db, alice_ctx, Choice.BUY)
            manager.submit_choice(db, bob_ctx, Choice.BUY)
            manager.submit_choice(db, carol_ctx, Choice.SELL)
            manager.reveal(db, host)
            return meta.pending(), own.pending()

        room_messages, own_messages = asyncio.run(scenario())
        types = [m["type"] for m in room_messages]

        assert types[0] == "round_started"
        assert "round_locked" in types
        news = types.index("news_update")
        assert types[news + 1] == "update_players"
        assert types[-1] == "round_started"
        assert types.index("round_locked") < news

        settled = room_messages[news]["payload"]
        assert settled["price"] == 106.0
        assert settled["roundNumber"] == 1
        assert room_messages[-1]["payload"]["roundNumber"] == 2

        # roster never leaks choices
        for message in room_messages:
            if message["type"] == "update_players":
                assert all("choice" not in p for p in message["payload"].values())

        assert own_messages[-1]["payload"]["capital"] == 106.0
        assert own_messages[-1]["payload"]["choice"] is None

    def test_versions_never_decrease(self, manager, transport, db, host, join):
        _, ctx = join("alice")

        async def scenario():
            sub = transport.subscribe(meta_topic(host.room_id), players_topic(host.room_id))
            manager.start_round(db, host)
            manager.submit_choice(db, ctx, Choice.HOLD)
            manager.random_news(db, host)
            manager.reveal(db, host)
            return sub.pending()

        versions = [m["version"] for m in asyncio.run(scenario())]
        assert versions == sorted(versions)

    def test_host_left_reaches_players(self, manager, transport, db, host, join):
        _, ctx = join("alice")

        async def scenario():
            sub = transport.subscribe(meta_topic(host.room_id))
            manager.leave_as_host(db, host)
            return sub.pending()

        messages = asyncio.run(scenario())
        mirror = SessionMirror(ctx)
        for message in messages:
            mirror.apply(message)

        assert messages[-1]["type"] == "host_left"
        assert mirror.closed
        with pytest.raises(RoomClosed):
            mirror.ensure_open()

    def test_snapshot_for_returning_player(self, manager, db, host, join):
        player, _ = join("alice")
        manager.start_round(db, host, 30)

        snapshot = manager.snapshot(db, host.room_id, "token-alice")
        assert snapshot["type"] == "snapshot"
        assert snapshot["payload"]["player"]["id"] == player.id
        assert snapshot["payload"]["round"]["phase"] == "Open"
        assert snapshot["payload"]["round"]["countdownRemaining"] == 30

        anonymous = manager.snapshot(db, host.room_id)
        assert anonymous["payload"]["player"] is None

    def test_tick_publishes_countdown(self, manager, transport, db, host):
        manager.start_round(db, host, 2)

        async def scenario():
            sub = transport.subscribe(meta_topic(host.room_id))
            first = manager.tick(db, host.room_id)
            last = manager.tick(db, host.room_id)
            return first, last, sub.pending()

        first, last, messages = asyncio.run(scenario())
        assert first.counting and not last.counting
        assert last.settlement is not None
        countdowns = [m["payload"]["remaining"] for m in messages if m["type"] == "countdown"]
        assert countdowns == [1, 0]

        types = [m["type"] for m in messages]
        zero = types.index("countdown", types.index("countdown") + 1)
        assert zero < types.index("round_locked") < types.index("news_update")
        versions = [m["version"] for m in messages]
        assert versions == sorted(versions)

    def test_expired_countdown_reaches_mirror(self, manager, transport, db, host):
        manager.start_round(db, host, 1)

        async def scenario():
            sub = transport.subscribe(meta_topic(host.room_id))
            manager.tick(db, host.room_id)
            return sub.pending()

        mirror = SessionMirror(host)
        applied = {}
        for message in asyncio.run(scenario()):
            applied.setdefault(message["type"], []).append(mirror.apply(message))

        assert applied["countdown"] == [True]
        assert applied["round_locked"] == [True]
        assert mirror.round["roundNumber"] == 2


class TestNewsCountdown:
    def test_arm_countdown_keeps_votes(self, manager, db, host, join):
        player, ctx = join("alice")
        manager.start_round(db, host)
        manager.submit_choice(db, ctx, Choice.BUY)

        manager.random_news(db, host, random.Random(1))
        room = manager.arm_countdown(db, host, 10)

        assert room.phase == RoundPhase.OPEN
        assert room.countdown_active is True
        assert room.countdown_remaining == 10
        db.expire_all()
        assert manager.resume_session(db, host.room_id, "token-alice")[0].choice == Choice.BUY

    def test_arm_countdown_from_idle_opens_round(self, manager, transport, db, host):
        async def scenario():
            sub = transport.subscribe(meta_topic(host.room_id))
            room = manager.arm_countdown(db, host, 5)
            return room, sub.pending()

        room, messages = asyncio.run(scenario())
        assert room.phase == RoundPhase.OPEN
        assert messages[-1]["type"] == "round_started"
        assert messages[-1]["payload"]["durationSeconds"] == 5

    def test_arm_countdown_on_open_round_publishes_countdown(self, manager, transport, db, host):
        manager.start_round(db, host)

        async def scenario():
            sub = transport.subscribe(meta_topic(host.room_id))
            manager.arm_countdown(db, host, 7)
            return sub.pending()

        messages = asyncio.run(scenario())
        assert [m["type"] for m in messages] == ["countdown"]
        assert messages[0]["payload"]["remaining"] == 7

    def test_arm_countdown_is_host_only(self, manager, db, host, join):
        _, ctx = join("alice")
        with pytest.raises(NotHost):
            manager.arm_countdown(db, ctx, 5)


class TestRevealRaces:
    def test_reveal_after_countdown_settled_leaves_next_round_alone(self, manager, db, host, join):
        _, ctx = join("alice")
        manager.start_round(db, host, 1)
        manager.submit_choice(db, ctx, Choice.BUY)

        # the host read round 1, then the countdown settled it first
        stale_host_view = manager.get_room(db, host.room_id).round_number
        assert manager.tick(db, host.room_id).settlement is not None
        assert RoundStateMachine.reveal(db, host.room_id, round_number=stale_host_view) is None

        db.expire_all()
        room = manager.get_room(db, host.room_id)
        assert room.round_number == 2
        assert room.phase == RoundPhase.OPEN

    def test_countdown_expiring_after_manual_reveal(self, manager, db, host, join):
        _, ctx = join("alice")
        manager.start_round(db, host, 1)
        manager.submit_choice(db, ctx, Choice.BUY)

        # the manual reveal lands between the last countdown second and its reveal
        result = RoundStateMachine.tick(
            db, host.room_id,
            on_step=lambda step: manager.reveal(db, host),
        )

        assert result.expired
        assert result.settlement is None
        db.expire_all()
        room = manager.get_room(db, host.room_id)
        assert room.round_number == 2
        assert room.phase == RoundPhase.OPEN
        assert len(manager.price_history(db, host.room_id)) == 2
