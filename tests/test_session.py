"""Session context capabilities and client-side reconciliation."""
import pytest

from core.broadcaster import envelope
from core.exceptions import NotHost, RoomClosed
from core.session import Role, SessionContext, SessionMirror

ROOM = "ABC123"


@pytest.fixture
def ctx():
    return SessionContext(room_id=ROOM, session_token="tok", role=Role.PLAYER)


def _round(version, phase="Open", remaining=10, price=100.0):
    return envelope("snapshot", ROOM, version, {
        "round": {
            "roundNumber": 1,
            "phase": phase,
            "countdownRemaining": remaining,
            "countdownActive": remaining > 0,
            "newsText": "",
            "price": price,
            "closed": False,
        },
        "player": None,
    })


def test_role_capabilities():
    host = SessionContext(ROOM, "h", Role.HOST)
    player = SessionContext(ROOM, "p", Role.PLAYER)

    host.require_host()
    player.require_player()
    assert host.is_host and not player.is_host
    with pytest.raises(NotHost):
        player.require_host()
    with pytest.raises(NotHost):
        host.require_player()


def test_stale_message_dropped(ctx):
    mirror = SessionMirror(ctx)
    assert mirror.apply(_round(5, remaining=7))
    assert not mirror.apply(envelope("countdown", ROOM, 4, {"remaining": 9}))
    assert mirror.round["countdownRemaining"] == 7


def test_duplicate_is_harmless(ctx):
    mirror = SessionMirror(ctx)
    message = envelope("countdown", ROOM, 3, {"remaining": 2})
    mirror.apply(_round(2))
    mirror.apply(message)
    mirror.apply(message)
    assert mirror.round["countdownRemaining"] == 2
    assert mirror.version == 3


def test_slices_are_versioned_independently(ctx):
    mirror = SessionMirror(ctx)
    mirror.apply(envelope("update_players", ROOM, 9, {"p1": {"id": "p1", "name": "a", "capital": 100.0,
                                                             "hasChosen": False}}))
    assert mirror.apply(envelope("round_started", ROOM, 8, {"roundNumber": 2, "durationSeconds": 0}))
    assert mirror.round["roundNumber"] == 2
    assert set(mirror.players) == {"p1"}


def test_own_player_record(ctx):
    mirror = SessionMirror(ctx, player_id="p1")
    mirror.apply(envelope("player_update", ROOM, 3, {"id": "p2", "capital": 50.0}))
    assert mirror.player is None

    mirror.apply(envelope("player_update", ROOM, 4, {"id": "p1", "capital": 106.0, "choice": None}))
    assert mirror.player["capital"] == 106.0


def test_settlement_updates_price(ctx):
    mirror = SessionMirror(ctx)
    mirror.apply(_round(1))
    mirror.apply(envelope("round_locked", ROOM, 2, {"roundNumber": 1}))
    assert not mirror.can_vote()

    mirror.apply(envelope("news_update", ROOM, 3, {"text": "", "price": 106.0, "change": 6.0,
                                                   "percentChange": 6.0, "roundNumber": 1}))
    mirror.apply(envelope("round_started", ROOM, 3, {"roundNumber": 2, "durationSeconds": 0}))

    assert mirror.round["price"] == 106.0
    assert mirror.last_news["roundNumber"] == 1
    assert mirror.can_vote()


def test_other_room_ignored(ctx):
    mirror = SessionMirror(ctx)
    assert not mirror.apply(envelope("host_left", "OTHER1", 1))
    assert not mirror.closed


def test_host_left_freezes_mirror(ctx):
    mirror = SessionMirror(ctx)
    mirror.apply(_round(1))
    assert mirror.apply(envelope("host_left", ROOM, 2))

    assert mirror.closed
    assert not mirror.can_vote()
    assert not mirror.apply(_round(3, phase="Idle"))
    with pytest.raises(RoomClosed):
        mirror.ensure_open()
