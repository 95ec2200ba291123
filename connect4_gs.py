"""
connect4_gs.py — Connect Four on a 7x6 board.

State is a plain numpy int8 array (6 rows x 7 columns) plus the player
to move and a move counter. Clone = np.copy(board). Row 0 is the bottom.

Implements the GameState contract from mcts_alphazero.py.
"""
import numpy as np

from mcts_alphazero import GameState, InvalidMoveError, PlayHistory

# ── Constants ──
WIDTH = 7
HEIGHT = 6
NUM_PLAYERS = 2
NUM_MOVES = WIDTH
CONNECT = 4

EMPTY = 0
# cell value for player p is p + 1

_DIRECTIONS = ((0, 1), (1, 0), (1, 1), (1, -1))


class Connect4GS(GameState):
    """
    GameState implementation. One move = drop a piece in a column.

    Usage:
        gs = Connect4GS()
        for col in (1, 6, 3, 6):
            gs.play_move(col)
        print(gs.dump())
    """

    def __init__(self, *, _board=None, _player=0, _turn=0, _winner=-1):
        if _board is None:
            _board = np.zeros((HEIGHT, WIDTH), dtype=np.int8)
        self._board = _board
        self._player = _player
        self._turn = _turn
        self._winner = _winner

    def copy(self):
        return Connect4GS(_board=self._board.copy(), _player=self._player,
                          _turn=self._turn, _winner=self._winner)

    def __eq__(self, other):
        if not isinstance(other, Connect4GS):
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
        """uint8[7], 1 where the column still has room."""
        return (self._board[HEIGHT - 1] == EMPTY).astype(np.uint8)

    def play_move(self, move):
        move = int(move)
        if not 0 <= move < WIDTH:
            raise InvalidMoveError(f"column {move} is off the board")
        if self._winner >= 0 or self._turn == WIDTH * HEIGHT:
            raise InvalidMoveError("game is already over")
        empty = np.flatnonzero(self._board[:, move] == EMPTY)
        if len(empty) == 0:
            raise InvalidMoveError(f"column {move} is full")

        row = int(empty[0])
        self._board[row, move] = self._player + 1
        if self._connects(row, move):
            self._winner = self._player
        self._player = (self._player + 1) % NUM_PLAYERS
        self._turn += 1

    def _connects(self, row, col):
        """True if the piece at (row, col) completes a line of four."""
        piece = self._board[row, col]
        for dr, dc in _DIRECTIONS:
            count = 1
            for sign in (1, -1):
                r, c = row + sign * dr, col + sign * dc
                while 0 <= r < HEIGHT and 0 <= c < WIDTH and self._board[r, c] == piece:
                    count += 1
                    r += sign * dr
                    c += sign * dc
            if count >= CONNECT:
                return True
        return False

    def scores(self):
        """None while running, else float32[3]: [p0 win, p1 win, draw]."""
        if self._winner >= 0:
            out = np.zeros(NUM_PLAYERS + 1, dtype=np.float32)
            out[self._winner] = 1.0
            return out
        if self._turn == WIDTH * HEIGHT:
            out = np.zeros(NUM_PLAYERS + 1, dtype=np.float32)
            out[NUM_PLAYERS] = 1.0
            return out
        return None

    def canonicalized(self):
        """float32[2, 6, 7]: plane 0 = current player's pieces, plane 1 = opponent's."""
        me = self._player + 1
        them = (self._player + 1) % NUM_PLAYERS + 1
        return np.stack([self._board == me, self._board == them]).astype(np.float32)

    def num_symmetries(self):
        return 2

    def symmetries(self, base):
        """The record itself and its left-right mirror image."""
        mirrored = PlayHistory(
            canonical=np.ascontiguousarray(np.flip(base.canonical, axis=-1)),
            pi=np.ascontiguousarray(base.pi[::-1]),
            v=base.v,
            player=base.player,
        )
        return [base, mirrored]

    def dump(self):
        marks = {EMPTY: ".", 1: "X", 2: "O"}
        lines = [" ".join(marks[int(v)] for v in self._board[r])
                 for r in range(HEIGHT - 1, -1, -1)]
        lines.append(" ".join(str(c) for c in range(WIDTH)))
        lines.append(f"turn {self._turn}, to move: {marks[self._player + 1]}")
        return "\n".join(lines)

    def __repr__(self):
        return f"Connect4GS(turn={self._turn}, player={self._player})"
