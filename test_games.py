"""
test_games.py — GameState contract tests for the bundled games

Covers:
  1. Connect Four rules, encoding, identity and mirror symmetry
  2. Tic-tac-toe rules and the dihedral symmetry tables

Usage:
    pytest test_games.py
"""

import numpy as np
import pytest

from connect4_gs import Connect4GS
from mcts_alphazero import (
    NUM_DIHEDRAL, InvalidMoveError, PlayHistory, dihedral_inverse, dihedral_transform,
)
from tictactoe_gs import (
    TicTacToeGS, inverse_transform_record, move_permutations, transform_record,
)


def play(gs, moves):
    for m in moves:
        gs.play_move(m)
    return gs


def record_for(gs, pi=None):
    if pi is None:
        pi = np.arange(gs.num_moves(), dtype=np.float32)
        pi /= pi.sum()
    return PlayHistory(canonical=gs.canonicalized(), pi=pi, v=0.5, player=gs.current_player())


# ════════════════════════════════════════════════════════════
# 1. Connect Four
# ════════════════════════════════════════════════════════════

def test_connect4_initial_state():
    gs = Connect4GS()
    assert gs.num_players() == 2
    assert gs.num_moves() == 7
    assert gs.current_player() == 0
    assert gs.current_turn() == 0
    assert gs.scores() is None
    np.testing.assert_array_equal(gs.valid_moves(), np.ones(7))


def test_connect4_players_alternate():
    gs = play(Connect4GS(), [3, 3, 2])
    assert gs.current_player() == 1
    assert gs.current_turn() == 3


def test_connect4_vertical_win():
    gs = play(Connect4GS(), [0, 1, 0, 1, 0, 1, 0])
    np.testing.assert_array_equal(gs.scores(), [1, 0, 0])
    with pytest.raises(InvalidMoveError):
        gs.play_move(2)


def test_connect4_horizontal_win_for_second_player():
    gs = play(Connect4GS(), [0, 2, 0, 3, 1, 4, 6, 5])
    np.testing.assert_array_equal(gs.scores(), [0, 1, 0])


def test_connect4_diagonal_win():
    gs = play(Connect4GS(), [0, 1, 1, 2, 2, 3, 2, 3, 3, 6])
    assert gs.scores() is None
    gs.play_move(3)
    np.testing.assert_array_equal(gs.scores(), [1, 0, 0])


def test_connect4_full_column():
    gs = play(Connect4GS(), [0, 0, 0, 0, 0, 0])
    assert gs.valid_moves()[0] == 0
    assert gs.valid_moves()[1:].all()
    with pytest.raises(InvalidMoveError):
        gs.play_move(0)


@pytest.mark.parametrize("move", [-1, 7])
def test_connect4_off_board_move(move):
    with pytest.raises(InvalidMoveError):
        Connect4GS().play_move(move)


def test_invalid_move_is_a_value_error():
    with pytest.raises(ValueError):
        Connect4GS().play_move(99)


def test_connect4_canonical_is_from_current_player():
    gs = play(Connect4GS(), [3])
    c = gs.canonicalized()
    assert c.shape == (2, 6, 7)
    assert c.dtype == np.float32
    assert c[0].sum() == 0
    assert c[1, 0, 3] == 1

    gs.play_move(4)
    c = gs.canonicalized()
    assert c[0, 0, 3] == 1
    assert c[1, 0, 4] == 1


def test_connect4_copy_is_independent():
    gs = play(Connect4GS(), [1, 2])
    twin = gs.copy()
    assert twin == gs
    assert hash(twin) == hash(gs)

    twin.play_move(3)
    assert twin != gs
    assert gs.current_turn() == 2
    assert gs.valid_moves().sum() == 7


def test_connect4_equal_positions_share_a_hash():
    a = play(Connect4GS(), [1, 2, 3])
    b = play(Connect4GS(), [3, 2, 1])
    assert a == b
    assert len({a, b}) == 1


def test_connect4_mirror_symmetry():
    gs = play(Connect4GS(), [0, 1])
    base = record_for(gs)
    records = gs.symmetries(base)
    assert gs.num_symmetries() == 2
    assert len(records) == 2
    assert records[0] is base

    mirror = records[1]
    np.testing.assert_array_equal(mirror.canonical, base.canonical[:, :, ::-1])
    np.testing.assert_array_equal(mirror.pi, base.pi[::-1])
    assert mirror.v == base.v
    assert mirror.player == base.player

    back = gs.symmetries(mirror)[1]
    np.testing.assert_array_equal(back.canonical, base.canonical)
    np.testing.assert_array_equal(back.pi, base.pi)


def test_connect4_dump():
    text = play(Connect4GS(), [3]).dump()
    assert "X" in text
    assert "to move: O" in text


# ════════════════════════════════════════════════════════════
# 2. Tic-tac-toe
# ════════════════════════════════════════════════════════════

def test_tictactoe_row_win():
    gs = play(TicTacToeGS(), [0, 3, 1, 4, 2])
    np.testing.assert_array_equal(gs.scores(), [1, 0, 0])


def test_tictactoe_draw():
    gs = play(TicTacToeGS(), [0, 1, 2, 4, 3, 5, 7, 6, 8])
    np.testing.assert_array_equal(gs.scores(), [0, 0, 1])


def test_tictactoe_taken_cell():
    gs = play(TicTacToeGS(), [4])
    with pytest.raises(InvalidMoveError):
        gs.play_move(4)


def test_dihedral_inverse_undoes_transform():
    board = np.arange(12).reshape(1, 3, 4)[:, :, :3].copy()
    for k in range(NUM_DIHEDRAL):
        there = dihedral_transform(board, k)
        np.testing.assert_array_equal(dihedral_transform(there, dihedral_inverse(k)), board)


def test_move_permutations():
    table = move_permutations()
    assert table.shape == (NUM_DIHEDRAL, 9)
    np.testing.assert_array_equal(table[0], np.arange(9))
    for row in table:
        assert sorted(row.tolist()) == list(range(9))
    assert len({tuple(row) for row in table}) == NUM_DIHEDRAL
    assert move_permutations() is table


def test_tictactoe_symmetries_are_distinct():
    gs = play(TicTacToeGS(), [0, 5])
    base = record_for(gs)
    records = gs.symmetries(base)
    assert len(records) == gs.num_symmetries() == 8
    assert records[0] is base
    assert len({r.canonical.tobytes() for r in records}) == 8
    for r in records:
        assert r.pi.sum() == pytest.approx(1.0)
        assert r.v == base.v


def test_symmetry_round_trip():
    gs = play(TicTacToeGS(), [0, 5, 7])
    base = record_for(gs)
    for k in range(NUM_DIHEDRAL):
        back = inverse_transform_record(transform_record(base, k), k)
        np.testing.assert_array_equal(back.canonical, base.canonical)
        np.testing.assert_array_equal(back.pi, base.pi)


def test_policy_moves_with_the_board():
    for move in range(9):
        gs = play(TicTacToeGS(), [move])
        pi = np.zeros(9, dtype=np.float32)
        pi[move] = 1.0
        base = record_for(gs, pi)
        for k in range(NUM_DIHEDRAL):
            r = transform_record(base, k)
            # the X just played is the opponent's piece, plane 1
            landed = int(np.flatnonzero(r.canonical[1].ravel())[0])
            assert int(np.argmax(r.pi)) == landed


def test_tictactoe_dump_and_storage():
    gs = play(TicTacToeGS(), [4, 0])
    key = gs.copy()
    key.minimize_storage()
    assert key == gs
    assert hash(key) == hash(gs)
    text = gs.dump()
    assert text.splitlines()[1] == ". X ."
    assert "to move: X" in text
