"""Player ledger: identity, votes and settlement writes."""
from decimal import Decimal

import pytest

from core.exceptions import PlayerNotFound, RoundLocked, UnknownRoom
from core.round_state_machine import RoundStateMachine
from models import Choice, Player
from services import ledger_service

CAPITAL = Decimal("100.00")


@pytest.fixture
def room_id(host):
    return host.room_id


def _upsert(db, room_id, token, name=""):
    player = ledger_service.upsert_player(db, room_id, token, name, CAPITAL)
    db.commit()
    return player


def test_upsert_is_idempotent_per_token(db, room_id):
    first = _upsert(db, room_id, "tok-1", "alice")
    second = _upsert(db, room_id, "tok-1", "alice")

    assert first.id == second.id
    assert db.query(Player).filter(Player.room_id == room_id).count() == 1


def test_upsert_keeps_capital_on_rejoin(db, room_id):
    player = _upsert(db, room_id, "tok-1", "alice")
    player.capital = Decimal("87.50")
    db.commit()

    again = _upsert(db, room_id, "tok-1", "")
    assert again.capital == Decimal("87.50")
    assert again.name == "alice"


def test_upsert_renames_on_new_name(db, room_id):
    _upsert(db, room_id, "tok-1", "alice")
    player = _upsert(db, room_id, "tok-1", "  Alice B  ")
    assert player.name == "Alice B"


def test_upsert_default_name(db, room_id):
    player = _upsert(db, room_id, "tok-1")
    assert player.name == f"Player-{player.id[:4]}"
    assert player.capital == CAPITAL
    assert player.choice is None


def test_upsert_absorbs_lost_insert_race(db, room_id, monkeypatch):
    existing = _upsert(db, room_id, "tok-1", "alice")
    existing_id = existing.id

    real_lookup = ledger_service.get_player_by_token
    calls = []

    def lookup_misses_first_time(db_, room_id_, token_):
        calls.append(token_)
        if len(calls) == 1:
            return None
        return real_lookup(db_, room_id_, token_)

    monkeypatch.setattr(ledger_service, "get_player_by_token", lookup_misses_first_time)

    player = _upsert(db, room_id, "tok-1", "alice")
    assert player.id == existing_id
    assert db.query(Player).filter(Player.room_id == room_id).count() == 1


def test_record_choice_requires_open_round(db, room_id):
    player = _upsert(db, room_id, "tok-1", "alice")
    with pytest.raises(RoundLocked):
        ledger_service.record_choice(db, room_id, player.id, Choice.BUY)


def test_record_choice_last_vote_wins(db, room_id):
    player = _upsert(db, room_id, "tok-1", "alice")
    RoundStateMachine.start_round(db, room_id)

    ledger_service.record_choice(db, room_id, player.id, Choice.BUY)
    ledger_service.record_choice(db, room_id, player.id, Choice.SELL)
    db.commit()

    db.refresh(player)
    assert player.choice == Choice.SELL
    assert player.last_vote_at is not None


def test_record_choice_unknown_room_or_player(db, room_id):
    RoundStateMachine.start_round(db, room_id)
    with pytest.raises(UnknownRoom):
        ledger_service.record_choice(db, "NOPE00", "abc", Choice.BUY)
    with pytest.raises(PlayerNotFound):
        ledger_service.record_choice(db, room_id, "missing", Choice.BUY)


def test_tally_counts_abstainers_in_total(db, room_id):
    players = [_upsert(db, room_id, f"tok-{i}") for i in range(5)]
    RoundStateMachine.start_round(db, room_id)
    ledger_service.record_choice(db, room_id, players[0].id, Choice.BUY)
    ledger_service.record_choice(db, room_id, players[1].id, Choice.BUY)
    ledger_service.record_choice(db, room_id, players[2].id, Choice.SELL)
    ledger_service.record_choice(db, room_id, players[3].id, Choice.HOLD)
    db.commit()

    tally = ledger_service.tally_choices(db, room_id)
    assert (tally.buy, tally.hold, tally.sell, tally.total) == (2, 1, 1, 5)
    assert tally.buy_fraction == Decimal("0.4")
    assert tally.sell_fraction == Decimal("0.2")


def test_tally_empty_room(db, room_id):
    tally = ledger_service.tally_choices(db, room_id)
    assert tally.total == 0
    assert tally.buy_fraction == 0
    assert tally.sell_fraction == 0


def test_settle_round_applies_delta_and_clears_choices(db, room_id):
    buyer = _upsert(db, room_id, "tok-b")
    seller = _upsert(db, room_id, "tok-s")
    holder = _upsert(db, room_id, "tok-h")
    idle = _upsert(db, room_id, "tok-i")
    RoundStateMachine.start_round(db, room_id)
    ledger_service.record_choice(db, room_id, buyer.id, Choice.BUY)
    ledger_service.record_choice(db, room_id, seller.id, Choice.SELL)
    ledger_service.record_choice(db, room_id, holder.id, Choice.HOLD)

    written = ledger_service.settle_round(db, room_id, Decimal("0.06"))
    db.commit()

    assert written == 4
    capitals = {p.id: p.capital for p in ledger_service.roster(db, room_id).values()}
    assert capitals[buyer.id] == Decimal("106.00")
    assert capitals[seller.id] == Decimal("94.00")
    assert capitals[holder.id] == CAPITAL
    assert capitals[idle.id] == CAPITAL
    assert all(p.choice is None for p in ledger_service.roster(db, room_id).values())


def test_roster_in_join_order(db, room_id):
    ids = [_upsert(db, room_id, f"tok-{i}").id for i in range(3)]
    assert list(ledger_service.roster(db, room_id)) == ids


def test_remove_all_players(db, room_id):
    for i in range(3):
        _upsert(db, room_id, f"tok-{i}")
    assert ledger_service.remove_all_players(db, room_id) == 3
    db.commit()
    assert ledger_service.roster(db, room_id) == {}
