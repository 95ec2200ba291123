"""
tictactoe_gs.py — tic-tac-toe on a 3x3 board.

Move index = row * 3 + col. The board has the full dihedral symmetry
group (4 rotations x optional mirror), so every training record expands
into 8. The move relabelling for each transform is a permutation table
built once on first use.

Implements the GameState contract from mcts_alphazero.py.
"""
from functools import lru_cache

import numpy as np

from mcts_alphazero import (
    NUM_DIHEDRAL, GameState, InvalidMoveError, PlayHistory,
    dihedral_inverse, dihedral_transform,
)

# ── Constants ──
SIZE = 3
NUM_PLAYERS = 2
NUM_MOVES = SIZE * SIZE

EMPTY = 0

_LINES = (
    (0, 1, 2), (3, 4, 5), (6, 7, 8),   # rows
    (0, 3, 6), (1, 4, 7), (2, 5, 8),   # columns
    (0, 4, 8), (2, 4, 6),              # diagonals
)


@lru_cache(maxsize=None)
def move_permutations():
    """
    int64[8, 9]. Row k maps each cell of the transformed board to the
    original move found there, so transformed_pi = pi[perm[k]].
    """
    cells = np.arange(NUM_MOVES).reshape(SIZE, SIZE)
    table = np.stack([dihedral_transform(cells, k).ravel() for k in range(NUM_DIHEDRAL)])
    table.setflags(write=False)
    return table


def transform_record(record, k):
    """Apply dihedral transform `k` to a record's canonical tensor and policy."""
    return PlayHistory(
        canonical=dihedral_transform(record.canonical, k),
        pi=np.ascontiguousarray(record.pi[move_permutations()[k]]),
        v=record.v,
        player=record.player,
    )


def inverse_transform_record(record, k):
    return transform_record(record, dihedral_inverse(k))


class TicTacToeGS(GameState):

    def __init__(self, *, _board=None, _player=0, _turn=0, _winner=-1):
        if _board is None:
            _board = np.zeros(NUM_MOVES, dtype=np.int8)
        self._board = _board
        self._player = _player
        self._turn = _turn
        self._winner = _winner

    def copy(self):
        return TicTacToeGS(_board=self._board.copy(), _player=self._player,
                           _turn=self._turn, _winner=self._winner)

    def __eq__(self, other):
        if not isinstance(other, TicTacToeGS):
            return NotImplemented
        return (self._player == other._player
                and np.array_equal(self._board, other._board))

    def __hash__(self):
        return hash((self._player, self._board.tobytes()))

    def current_player(self):
        return self._player

    def current_turn(self):
        return self._turn

    def num_players(self):
        return NUM_PLAYERS

    def num_moves(self):
        return NUM_MOVES

    def valid_moves(self):
        return (self._board == EMPTY).astype(np.uint8)

    def play_move(self, move):
        move = int(move)
        if not 0 <= move < NUM_MOVES:
            raise InvalidMoveError(f"cell {move} is off the board")
        if self._winner >= 0 or self._turn == NUM_MOVES:
            raise InvalidMoveError("game is already over")
        if self._board[move] != EMPTY:
            raise InvalidMoveError(f"cell {move} is taken")

        piece = self._player + 1
        self._board[move] = piece
        for line in _LINES:
            if move in line and all(self._board[i] == piece for i in line):
                self._winner = self._player
                break
        self._player = (self._player + 1) % NUM_PLAYERS
        self._turn += 1

    def scores(self):
        if self._winner >= 0:
            out = np.zeros(NUM_PLAYERS + 1, dtype=np.float32)
            out[self._winner] = 1.0
            return out
        if self._turn == NUM_MOVES:
            out = np.zeros(NUM_PLAYERS + 1, dtype=np.float32)
            out[NUM_PLAYERS] = 1.0
            return out
        return None

    def canonicalized(self):
        """float32[2, 3, 3] from the current player's side."""
        board = self._board.reshape(SIZE, SIZE)
        me = self._player + 1
        them = (self._player + 1) % NUM_PLAYERS + 1
        return np.stack([board == me, board == them]).astype(np.float32)

    def num_symmetries(self):
        return NUM_DIHEDRAL

    def symmetries(self, base):
        return [base] + [transform_record(base, k) for k in range(1, NUM_DIHEDRAL)]

    def dump(self):
        marks = {EMPTY: ".", 1: "X", 2: "O"}
        rows = [" ".join(marks[int(v)] for v in self._board[r * SIZE:(r + 1) * SIZE])
                for r in range(SIZE)]
        rows.append(f"turn {self._turn}, to move: {marks[self._player + 1]}")
        return "\n".join(rows)

    def __repr__(self):
        return f"TicTacToeGS(turn={self._turn}, player={self._player})"
