"""
AlphaZero MCTS — generic search engine core

This module contains the Monte Carlo Tree Search used to pick moves in
deterministic, perfect-information, turn-based games. It depends on two
interfaces that are NOT implemented here:

  1. GameState  — one mutable game position (rules live in the game module)
  2. Evaluator  — maps a canonical position encoding to (value, policy)

Both are abstract base classes with docstrings explaining what each
method must do, its inputs, outputs, and invariants.

The search is driven by the caller, one simulation at a time:

    mcts = MCTS(cpuct=2.0, num_moves=gs.num_moves())
    while mcts.depth() < 800:
        leaf = mcts.find_leaf(gs)
        if leaf.terminal:
            value, pi = value_from_scores(leaf.state.scores(), leaf.player), None
        else:
            value, pi = evaluator.evaluate(leaf.state.canonicalized())
        mcts.process_result(value, pi)
    move = mcts.pick_move(0.0)

run_simulations() wraps exactly that loop. BatchedMCTS is the variant
that keeps several leaves in flight (virtual loss) so one evaluator call
can serve a whole batch.
"""

from __future__ import annotations

import logging
import math
import threading
import time
from abc import ABC, abstractmethod
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import List, Optional, Sequence, Tuple

import numpy as np

logger = logging.getLogger(__name__)


# ════════════════════════════════════════════════════════════════════
# §1  CONFIGURATION
# ════════════════════════════════════════════════════════════════════

@dataclass
class MCTSConfig:
    """All search hyperparameters in one place."""

    # --- Game ---
    num_players: int = 2
    num_moves: int = 7                  # fixed flat action space

    # --- Search ---
    cpuct: float = 2.0                  # exploration constant
    num_simulations: int = 800          # simulations per move
    root_noise_alpha: float = 0.0       # Dirichlet alpha at root, 0 = off
    root_noise_epsilon: float = 0.25    # fraction of noise mixed into priors

    # --- Batched search ---
    virtual_loss: float = 1.0           # pessimistic value per pending leaf

    # --- Move selection ---
    temperature: float = 1.0            # used for the opening moves
    temperature_move_threshold: int = 10  # after this many moves, temp → 0
    max_game_moves: int = 1000          # safety cap on self-play game length

    # --- Infrastructure ---
    seed: Optional[int] = None


# ════════════════════════════════════════════════════════════════════
# §2  ERRORS
# ════════════════════════════════════════════════════════════════════

class InvalidMoveError(ValueError):
    """play_move() was called with an index the position does not allow."""


class NodeStateError(RuntimeError):
    """A Node operation was called on a node in the wrong state."""


class SearchStateError(RuntimeError):
    """A controller operation was called out of order."""


# ════════════════════════════════════════════════════════════════════
# §3  GAME STATE INTERFACE  (implemented per game, see connect4_gs.py)
# ════════════════════════════════════════════════════════════════════

@dataclass(eq=False)
class PlayHistory:
    """One training record = one searched position from one game."""
    canonical: np.ndarray   # canonicalized() of the position
    pi: np.ndarray          # (num_moves,) float32, target policy
    v: float = 0.0          # outcome for `player`, filled after the game
    player: int = 0         # player to move when the record was taken

    def __repr__(self):
        return (f"PlayHistory(shape={self.canonical.shape}, "
                f"pi_sum={float(self.pi.sum()):.3f}, v={self.v:.3f})")


class GameState(ABC):
    """
    Abstract interface to one game.

    LIFECYCLE
    ---------
    A GameState instance represents one mutable position. The search
    never mutates the caller's instance: every simulation works on
    copy(), and the copy is handed back to the caller for evaluation.

    PLAYER INDEXING
    ---------------
    Players are indexed 0..num_players()-1. The "current player" is
    whoever must make the next move.

    ACTION IDS
    ----------
    Actions are integers in [0, num_moves()). num_moves() is a constant
    for a game type; at any position only the subset flagged by
    valid_moves() may be played.
    """

    # ------------------------------------------------------------------
    # Identity
    # ------------------------------------------------------------------

    @abstractmethod
    def copy(self) -> GameState:
        """
        Return a deep, fully independent copy of this position.

        Called once per simulation, so it should be cheap (an array
        copy, not an object-graph walk).
        """
        ...

    @abstractmethod
    def __eq__(self, other) -> bool:
        """Structural equality over the position, ignoring bookkeeping."""
        ...

    @abstractmethod
    def __hash__(self) -> int:
        """Hash consistent with __eq__, so positions can key a cache."""
        ...

    def minimize_storage(self) -> None:
        """
        Drop any data that is not needed once the position is only
        used as a cache key. The default keeps everything.
        """

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    @abstractmethod
    def current_player(self) -> int:
        """Return the index of the player who must move next."""
        ...

    @abstractmethod
    def current_turn(self) -> int:
        """Return the number of moves played so far."""
        ...

    @abstractmethod
    def num_players(self) -> int:
        """Return the number of players. Fixed for the game type."""
        ...

    @abstractmethod
    def num_moves(self) -> int:
        """Return the size of the action space. Fixed for the game type."""
        ...

    @abstractmethod
    def valid_moves(self) -> np.ndarray:
        """
        Return a mask over the action space.

        Returns:
            np.ndarray of shape (num_moves(),), dtype uint8 or bool.
            mask[a] is non-zero iff action a may be played now.
        """
        ...

    # ------------------------------------------------------------------
    # State transitions
    # ------------------------------------------------------------------

    @abstractmethod
    def play_move(self, move: int) -> None:
        """
        Apply a move, mutating the position in place.

        PRECONDITION: valid_moves()[move] is set. Anything else is a
        caller bug and raises InvalidMoveError.
        """
        ...

    # ------------------------------------------------------------------
    # Terminal state
    # ------------------------------------------------------------------

    @abstractmethod
    def scores(self) -> Optional[np.ndarray]:
        """
        Return None while the game is running.

        Once the game is over return a float32 vector of length
        num_players() + 1. Entry p is 1 if player p won, the last
        entry is 1 for a draw. The search treats a non-None result
        as the terminal signal and never asks the evaluator about it.
        """
        ...

    # ------------------------------------------------------------------
    # Encodings
    # ------------------------------------------------------------------

    @abstractmethod
    def canonicalized(self) -> np.ndarray:
        """
        Return a fixed-shape float32 tensor of the position, seen
        from the current player's side. This is the evaluator input.
        """
        ...

    @abstractmethod
    def num_symmetries(self) -> int:
        """Return the size of the game's symmetry group (1 = none)."""
        ...

    @abstractmethod
    def symmetries(self, base: PlayHistory) -> List[PlayHistory]:
        """
        Return every record equivalent to `base` under the game's
        symmetry group, `base` itself first.

        The canonical tensor and the policy vector of each record are
        permuted by the same transform, so pi[a] still describes the
        move that lands where the transformed board says it does.
        """
        ...

    @abstractmethod
    def dump(self) -> str:
        """Return a human-readable rendering of the position."""
        ...


# ════════════════════════════════════════════════════════════════════
# §4  EVALUATOR INTERFACE
# ════════════════════════════════════════════════════════════════════

class Evaluator(ABC):
    """
    Abstract interface to the position evaluator (usually a network).

    OUTPUTS
      value:  float in [-1, +1], expected outcome for the player to
              move in the evaluated position.
      policy: np.ndarray of shape (num_moves,), prior per action. It
              should sum to ~1 but the search does not rely on it.
    """

    @abstractmethod
    def evaluate(self, canonical: np.ndarray) -> Tuple[float, np.ndarray]:
        """Evaluate one canonical tensor. Returns (value, policy)."""
        ...

    def evaluate_batch(
        self,
        canonicals: np.ndarray,
    ) -> Tuple[np.ndarray, np.ndarray]:
        """
        Evaluate a stacked batch of canonical tensors.

        Returns:
            values:   (batch,) float32
            policies: (batch, num_moves) float32
        """
        results = [self.evaluate(c) for c in canonicals]
        values = np.array([v for v, _ in results], dtype=np.float32)
        policies = np.stack([p for _, p in results]).astype(np.float32)
        return values, policies


class UniformEvaluator(Evaluator):
    """Uniform policy and zero value. Deterministic, for tests and baselines."""

    def __init__(self, num_moves: int):
        self.num_moves = num_moves
        self._policy = np.full(num_moves, 1.0 / num_moves, dtype=np.float32)

    def evaluate(self, canonical):
        return 0.0, self._policy.copy()


# ════════════════════════════════════════════════════════════════════
# §5  NODE
# ════════════════════════════════════════════════════════════════════

class Node:
    """
    One explored position in the search tree.

    Statistics are stored for the edge that leads here: `w` is the sum
    of backed-up values seen by the player who chose `move` (the player
    to move at the parent), so a parent can rank its children by `q`
    directly. The root has no such player and accumulates for its own
    player to move.

    Attributes:
        move:      action index from the parent (-1 at the root).
        policy:    prior from the evaluator, 0 until set_priors().
        n:         visit count.
        w:         value sum (see above).
        player:    player to move here, -1 until selection reaches it.
        terminal:  True once the position is known to be game over.
        pending:   leaves in flight through this node (BatchedMCTS).
        vloss:     virtual loss currently applied (BatchedMCTS).
        children:  child nodes in increasing move order.
    """

    __slots__ = (
        'move', 'policy', 'n', 'w', 'player', 'terminal',
        'pending', 'vloss', 'children',
    )

    def __init__(self, move: int = -1, policy: float = 0.0):
        self.move = move
        self.policy = policy
        self.n: int = 0
        self.w: float = 0.0
        self.player: int = -1
        self.terminal: bool = False
        self.pending: int = 0
        self.vloss: float = 0.0
        self.children: List[Node] = []

    def __repr__(self):
        return (f"Node(move={self.move}, n={self.n}, q={self.q:.3f}, "
                f"policy={self.policy:.3f}, children={len(self.children)})")

    @property
    def q(self) -> float:
        """Mean value W / N. 0 if unvisited."""
        if self.n == 0:
            return 0.0
        return self.w / self.n

    def expand(self, legal_mask: np.ndarray) -> None:
        """
        Create one child per legal move, in increasing move order.

        A node is expanded exactly once, with the full legal set.

        Raises:
            NodeStateError: the node already has children.
        """
        if self.children:
            raise NodeStateError(
                f"node for move {self.move} is already expanded "
                f"({len(self.children)} children)")
        self.children = [Node(move=int(m)) for m in np.flatnonzero(legal_mask)]

    def set_priors(self, policy: np.ndarray) -> None:
        """Set child.policy = policy[child.move] for every child."""
        if not self.children:
            return
        if len(policy) <= self.children[-1].move:
            raise NodeStateError(
                f"policy has {len(policy)} entries but a child plays "
                f"move {self.children[-1].move}")
        for child in self.children:
            child.policy = float(policy[child.move])

    def score(self, parent_n: int, cpuct: float) -> float:
        """
        Selection score of this node as a child of a node with
        `parent_n` visits:

          score = q + cpuct * policy * parent_n / (1 + n)

        The exploration term grows linearly with the parent count.
        Pending leaves count as visits carrying the virtual loss.
        """
        n = self.n + self.pending
        q = (self.w - self.vloss) / n if n > 0 else 0.0
        return q + cpuct * self.policy * parent_n / (1 + n)

    def best_child(self, cpuct: float) -> Node:
        """
        Return the child with the highest score. Ties go to the
        lowest move index.

        Raises:
            NodeStateError: the node has no children.
        """
        if not self.children:
            raise NodeStateError(f"best_child on unexpanded node (move {self.move})")
        parent_n = self.n + self.pending
        best = self.children[0]
        best_score = best.score(parent_n, cpuct)
        for child in self.children[1:]:
            s = child.score(parent_n, cpuct)
            if s > best_score:
                best_score = s
                best = child
        return best


# ════════════════════════════════════════════════════════════════════
# §6  MCTS SEARCH
# ════════════════════════════════════════════════════════════════════

@dataclass(eq=False)
class Leaf:
    """
    Result of find_leaf(): the advanced copy of the game plus the path
    that reached it. Only the controller that produced it may consume it.
    """
    state: GameState
    path: List[Node] = field(repr=False)
    terminal: bool
    player: int
    processed: bool = False

    @property
    def node(self) -> Node:
        return self.path[-1]


def value_from_scores(scores: np.ndarray, player: int) -> float:
    """
    Collapse a terminal score vector to one value for `player`:
    +1 if they won, -1 if another player won, 0 for a draw.
    """
    return float(2.0 * scores[player] + scores[-1] - 1.0)


class SearchTree:
    """
    State shared by both controllers: the tree, the simulation counter,
    move selection from root statistics and root advancement.
    """

    def __init__(
        self,
        cpuct: float,
        num_moves: int,
        num_players: int = 2,
        root_noise_alpha: float = 0.0,
        root_noise_epsilon: float = 0.25,
        seed: Optional[int] = None,
    ):
        if cpuct < 0:
            raise ValueError(f"cpuct must be >= 0, got {cpuct}")
        if num_moves <= 0:
            raise ValueError(f"num_moves must be positive, got {num_moves}")
        if num_players < 1:
            raise ValueError(f"num_players must be positive, got {num_players}")

        self.cpuct = cpuct
        self.num_moves = num_moves
        self.num_players = num_players
        self.root_noise_alpha = root_noise_alpha
        self.root_noise_epsilon = root_noise_epsilon
        self.root = Node()
        self._depth = 0
        self._rng = np.random.default_rng(seed)

    @classmethod
    def from_config(cls, config: MCTSConfig, **kwargs):
        """Build a controller from an MCTSConfig."""
        return cls(
            cpuct=config.cpuct,
            num_moves=config.num_moves,
            num_players=config.num_players,
            root_noise_alpha=config.root_noise_alpha,
            root_noise_epsilon=config.root_noise_epsilon,
            seed=config.seed,
            **kwargs,
        )

    def depth(self) -> int:
        """Number of simulations completed since the root was set."""
        return self._depth

    def root_value(self) -> float:
        """Mean backed-up value at the root, for the root's player."""
        return self.root.q

    # ------------------------------------------------------------------
    # Select / backup
    # ------------------------------------------------------------------

    def _select(self, state: GameState) -> List[Node]:
        """
        Walk from the root with best_child(), replaying each move on
        `state`, until a node with no children. Fills in `player` and
        `terminal` on the nodes it reaches.
        """
        node = self.root
        if node.player < 0:
            node.player = state.current_player()
        path = [node]
        while node.children:
            node = node.best_child(self.cpuct)
            state.play_move(node.move)
            if node.player < 0:
                node.player = state.current_player()
            path.append(node)
        if not node.terminal and state.scores() is not None:
            node.terminal = True
        return path

    @staticmethod
    def _backup(path: Sequence[Node], value: float, player: int) -> None:
        """
        Add one visit and the value to every node on the path.

        `value` is relative to `player`, the player to move at the
        frontier. Each node accumulates it for its chooser (the player
        to move at its parent), so the sign flips wherever the chooser
        differs from `player`. With strict alternation that is every ply.
        """
        chooser = path[0].player
        for node in path:
            node.n += 1
            node.w += value if chooser == player else -value
            chooser = node.player

    def _expand(self, leaf: Leaf, policy: np.ndarray) -> None:
        node = leaf.node
        node.expand(leaf.state.valid_moves())
        node.set_priors(policy)
        if node is self.root and self.root_noise_alpha > 0:
            self._add_root_noise()

    def _add_root_noise(self) -> None:
        """
        Mix Dirichlet noise into the root priors:

          policy = (1 - epsilon) * policy + epsilon * noise
        """
        children = self.root.children
        if not children:
            return
        noise = self._rng.dirichlet([self.root_noise_alpha] * len(children))
        eps = self.root_noise_epsilon
        for child, eta in zip(children, noise):
            child.policy = (1 - eps) * child.policy + eps * float(eta)

    # ------------------------------------------------------------------
    # Move selection
    # ------------------------------------------------------------------

    def _visit_distribution(self, temperature: float) -> Tuple[np.ndarray, np.ndarray]:
        """
        Return (moves, probabilities) over the root's children.

        temperature == 0: all mass on the most visited child, lowest
        move on ties. Otherwise proportional to n ** (1 / temperature).
        """
        children = self.root.children
        if not children:
            raise SearchStateError("root has no children; run at least one simulation first")
        if temperature < 0:
            raise ValueError(f"temperature must be >= 0, got {temperature}")

        moves = np.array([c.move for c in children], dtype=np.int64)
        counts = np.array([c.n for c in children], dtype=np.float64)
        probs = np.zeros(len(children), dtype=np.float64)

        if temperature == 0 or counts.max() == 0:
            if counts.max() == 0:
                probs[:] = 1.0 / len(children)
            else:
                probs[int(np.argmax(counts))] = 1.0
            return moves, probs

        # scale by the max first so n ** (1/T) cannot overflow for small T
        weights = (counts / counts.max()) ** (1.0 / temperature)
        probs = weights / weights.sum()
        return moves, probs

    def probs(self, temperature: float = 1.0, num_moves: Optional[int] = None) -> np.ndarray:
        """
        Return the root visit distribution as a full action-space vector.

        Returns:
            np.ndarray of shape (num_moves,), float32, sums to 1. Only
            moves legal at the root are non-zero.
        """
        moves, p = self._visit_distribution(temperature)
        out = np.zeros(num_moves or self.num_moves, dtype=np.float32)
        out[moves] = p
        return out

    def pick_move(self, temperature: float = 0.0, num_moves: Optional[int] = None) -> int:
        """
        Choose a move from the root visit counts.

        temperature == 0 returns the most visited move (lowest index on
        ties). temperature > 0 samples proportionally to n ** (1/T).

        Raises:
            SearchStateError: the root was never expanded.
        """
        moves, p = self._visit_distribution(temperature)
        limit = num_moves or self.num_moves
        if temperature == 0:
            move = int(moves[int(np.argmax(p))])
        else:
            move = int(moves[self._rng.choice(len(moves), p=p)])
        if move >= limit:
            raise SearchStateError(f"picked move {move} outside action space of {limit}")
        return move

    # ------------------------------------------------------------------
    # Root advancement
    # ------------------------------------------------------------------

    def _check_idle(self) -> None:
        pass

    def update_root(self, move: int) -> None:
        """
        Commit `move`: the matching child becomes the new root and its
        subtree is kept. Everything else is released. If the child was
        never created, the search restarts from an empty root.

        The simulation counter restarts at 0.
        """
        self._check_idle()
        chooser = self.root.player
        new_root = None
        for child in self.root.children:
            if child.move == move:
                new_root = child
                break

        if new_root is None:
            self.root = Node()
            logger.debug("update_root(%d): no subtree, starting fresh", move)
        else:
            # re-express the kept statistics for the new root's own player
            if new_root.player >= 0 and new_root.player != chooser:
                new_root.w = -new_root.w
            new_root.move = -1
            new_root.policy = 0.0
            self.root = new_root
            logger.debug("update_root(%d): reusing subtree with %d visits",
                         move, new_root.n)
            if self.root_noise_alpha > 0:
                self._add_root_noise()
        self._depth = 0


class MCTS(SearchTree):
    """
    Single-threaded Monte Carlo Tree Search.

    Call flow for each simulation:
      1. find_leaf():      SELECT down the tree on a copy of the game.
      2. (caller)          EVALUATE the leaf, or score it if terminal.
      3. process_result(): EXPAND the leaf and BACKUP the value.

    Exactly one leaf may be outstanding at a time.
    """

    def __init__(self, cpuct: float, num_moves: int, num_players: int = 2, **kwargs):
        super().__init__(cpuct, num_moves, num_players, **kwargs)
        self._pending: Optional[Leaf] = None

    def find_leaf(self, gs: GameState) -> Leaf:
        """
        Copy `gs` and descend to the next frontier.

        Args:
            gs: the position the root stands for (not modified).

        Returns:
            Leaf with the advanced copy. leaf.terminal is True when the
            copy is game over and no evaluation is needed.

        Raises:
            SearchStateError: a previous leaf has not been processed.
        """
        if self._pending is not None:
            raise SearchStateError("find_leaf called while a leaf is pending; "
                                   "call process_result first")
        state = gs.copy()
        path = self._select(state)
        frontier = path[-1]
        self._pending = Leaf(state=state, path=path,
                             terminal=frontier.terminal, player=frontier.player)
        return self._pending

    def process_result(self, value: float, policy: Optional[np.ndarray] = None) -> None:
        """
        Finish the pending simulation.

        Args:
            value:  outcome estimate for the player to move at the leaf.
            policy: (num_moves,) priors. Ignored for terminal leaves.

        Raises:
            SearchStateError: no leaf is pending.
        """
        leaf = self._pending
        if leaf is None:
            raise SearchStateError("process_result called with no pending leaf")
        if not leaf.terminal:
            if policy is None:
                raise ValueError("a policy is required for a non-terminal leaf")
            self._expand(leaf, policy)
        self._backup(leaf.path, float(value), leaf.player)
        leaf.processed = True
        self._pending = None
        self._depth += 1

    def release(self) -> None:
        """
        Abandon the pending leaf without a backup, e.g. after the
        evaluator failed. The next find_leaf() may start a new simulation.

        Raises:
            SearchStateError: no leaf is pending.
        """
        if self._pending is None:
            raise SearchStateError("release called with no pending leaf")
        self._pending.processed = True
        self._pending = None

    def _check_idle(self) -> None:
        if self._pending is not None:
            raise SearchStateError("cannot move the root with a leaf pending; "
                                   "call process_result or release first")


# ════════════════════════════════════════════════════════════════════
# §7  BATCHED MCTS (several leaves in flight, virtual loss)
# ════════════════════════════════════════════════════════════════════

class BatchedMCTS(SearchTree):
    """
    MCTS that allows several outstanding leaves, so their evaluations
    can be batched into one call.

    Each find_leaf() applies a virtual loss to every node on its path:
    one pending visit carrying `virtual_loss` against the player who
    chose it. Later selections therefore prefer other branches instead
    of walking into the same frontier. process_result() removes the
    virtual loss and applies the real backup.

    One tree-wide lock serialises select, expand and backup, so a
    selection never observes half of a backup. Evaluation happens
    outside the lock. Safe to call from several threads.
    """

    def __init__(
        self,
        cpuct: float,
        num_moves: int,
        num_players: int = 2,
        virtual_loss: float = 1.0,
        **kwargs,
    ):
        super().__init__(cpuct, num_moves, num_players, **kwargs)
        self.virtual_loss = virtual_loss
        self._lock = threading.Lock()
        self._in_flight = 0

    @classmethod
    def from_config(cls, config: MCTSConfig, **kwargs):
        kwargs.setdefault("virtual_loss", config.virtual_loss)
        return super().from_config(config, **kwargs)

    def in_flight(self) -> int:
        """Number of leaves handed out and not yet processed."""
        return self._in_flight

    def find_leaf(self, gs: GameState) -> Leaf:
        """Like MCTS.find_leaf, but any number of leaves may be pending."""
        state = gs.copy()
        with self._lock:
            path = self._select(state)
            for node in path:
                node.pending += 1
                node.vloss += self.virtual_loss
            self._in_flight += 1
        frontier = path[-1]
        return Leaf(state=state, path=path,
                    terminal=frontier.terminal, player=frontier.player)

    def process_result(
        self,
        leaf: Leaf,
        value: float,
        policy: Optional[np.ndarray] = None,
    ) -> None:
        """
        Finish the simulation that produced `leaf`.

        If another leaf already expanded the same frontier (a collision),
        only the virtual loss is removed: the result is dropped and does
        not count as a simulation.

        Raises:
            SearchStateError: `leaf` was already processed.
        """
        if not leaf.terminal and policy is None:
            raise ValueError("a policy is required for a non-terminal leaf")
        with self._lock:
            if leaf.processed:
                raise SearchStateError("leaf already processed")
            for node in leaf.path:
                node.pending -= 1
                node.vloss -= self.virtual_loss
            leaf.processed = True
            self._in_flight -= 1
            if not leaf.terminal and leaf.node.children:
                logger.debug("Dropping colliding leaf at move %d", leaf.node.move)
                return
            if not leaf.terminal:
                self._expand(leaf, policy)
            self._backup(leaf.path, float(value), leaf.player)
            self._depth += 1

    def release(self, leaf: Leaf) -> None:
        """
        Abandon `leaf` without a backup: its virtual loss is removed and it
        no longer counts as in flight.

        Raises:
            SearchStateError: `leaf` was already processed or released.
        """
        with self._lock:
            if leaf.processed:
                raise SearchStateError("leaf already processed")
            for node in leaf.path:
                node.pending -= 1
                node.vloss -= self.virtual_loss
            leaf.processed = True
            self._in_flight -= 1

    def outstanding(self) -> int:
        """Completed plus in-flight simulations, read atomically."""
        with self._lock:
            return self._depth + self._in_flight

    def _check_idle(self) -> None:
        if self._in_flight:
            raise SearchStateError(
                f"cannot move the root with {self._in_flight} leaves in flight")


# ════════════════════════════════════════════════════════════════════
# §8  SEARCH DRIVERS
# ════════════════════════════════════════════════════════════════════

def _leaf_value(leaf: Leaf) -> float:
    return value_from_scores(leaf.state.scores(), leaf.player)


def run_simulations(
    mcts: MCTS,
    gs: GameState,
    evaluator: Evaluator,
    simulations: int,
    time_limit: Optional[float] = None,
) -> int:
    """
    Run simulations until mcts.depth() reaches `simulations` or
    `time_limit` seconds have passed. Terminal leaves are scored from
    the game and never reach the evaluator. Evaluator errors propagate
    after the pending leaf is released, so the caller may retry.

    Returns:
        mcts.depth() when the loop stopped.
    """
    start = time.monotonic()
    while mcts.depth() < simulations:
        if time_limit is not None and time.monotonic() - start >= time_limit:
            logger.debug("Search stopped by time limit after %d simulations",
                         mcts.depth())
            break
        leaf = mcts.find_leaf(gs)
        if leaf.terminal:
            mcts.process_result(_leaf_value(leaf))
        else:
            try:
                value, policy = evaluator.evaluate(leaf.state.canonicalized())
            except Exception:
                mcts.release()
                raise
            mcts.process_result(value, policy)
    return mcts.depth()


def run_batched_simulations(
    mcts: BatchedMCTS,
    gs: GameState,
    evaluator: Evaluator,
    simulations: int,
    batch_size: int = 8,
) -> int:
    """
    Run simulations in rounds of up to `batch_size` leaves, with one
    evaluate_batch() call per round.

    Returns:
        mcts.depth() when the loop stopped.
    """
    if batch_size < 1:
        raise ValueError(f"batch_size must be positive, got {batch_size}")

    while mcts.depth() < simulations:
        want = min(batch_size, simulations - mcts.depth())
        leaves = [mcts.find_leaf(gs) for _ in range(want)]

        needs_eval = []
        for leaf in leaves:
            if leaf.terminal:
                mcts.process_result(leaf, _leaf_value(leaf))
            else:
                needs_eval.append(leaf)

        if needs_eval:
            try:
                batch = np.stack([leaf.state.canonicalized() for leaf in needs_eval])
                values, policies = evaluator.evaluate_batch(batch)
            except Exception:
                for leaf in needs_eval:
                    mcts.release(leaf)
                raise
            for leaf, value, policy in zip(needs_eval, values, policies):
                mcts.process_result(leaf, float(value), policy)
    return mcts.depth()


def run_threaded_simulations(
    mcts: BatchedMCTS,
    gs: GameState,
    evaluator: Evaluator,
    simulations: int,
    num_threads: int = 4,
) -> int:
    """
    Run simulations from `num_threads` worker threads sharing one tree.
    Each worker loops find_leaf → evaluate → process_result until the
    completed plus in-flight count reaches `simulations`. The first
    worker error is re-raised here. A failed leaf is released first.

    Returns:
        mcts.depth() when all workers finished.
    """
    claim_lock = threading.Lock()

    def worker() -> None:
        while True:
            with claim_lock:
                if mcts.outstanding() >= simulations:
                    return
                leaf = mcts.find_leaf(gs)
            if leaf.terminal:
                mcts.process_result(leaf, _leaf_value(leaf))
            else:
                try:
                    value, policy = evaluator.evaluate(leaf.state.canonicalized())
                except Exception:
                    mcts.release(leaf)
                    raise
                mcts.process_result(leaf, value, policy)

    with ThreadPoolExecutor(max_workers=num_threads,
                            thread_name_prefix="mcts-search") as pool:
        futures = [pool.submit(worker) for _ in range(num_threads)]
        for future in futures:
            future.result()
    return mcts.depth()


# ════════════════════════════════════════════════════════════════════
# §9  SELF-PLAY RECORDS & SYMMETRIES
# ════════════════════════════════════════════════════════════════════

NUM_DIHEDRAL = 8


def dihedral_transform(array: np.ndarray, k: int) -> np.ndarray:
    """
    Apply member `k` of the dihedral group of the square to the last
    two axes of `array`: k % 4 quarter turns, then a left-right
    mirror when k >= 4.
    """
    out = np.rot90(array, k % 4, axes=(-2, -1))
    if k >= 4:
        out = np.flip(out, axis=-1)
    return np.ascontiguousarray(out)


def dihedral_inverse(k: int) -> int:
    """Index of the transform that undoes transform `k`."""
    if k >= 4:
        return k  # reflections are their own inverse
    return (4 - k) % 4


def play_game(
    gs: GameState,
    evaluator: Evaluator,
    config: MCTSConfig,
    augment: bool = True,
) -> List[PlayHistory]:
    """
    Play one game of self-play from `gs` (not modified) and return its
    training records.

    Each searched position yields one PlayHistory with the root visit
    distribution as `pi`. When the game ends every record gets the
    outcome for its own player as `v`. With `augment`, each record is
    expanded through gs.symmetries().

    Temperature schedule: config.temperature for the first
    config.temperature_move_threshold moves, then 0 (greedy).
    """
    game = gs.copy()
    mcts = MCTS.from_config(config)
    history: List[PlayHistory] = []
    moves = 0

    while game.scores() is None and moves < config.max_game_moves:
        run_simulations(mcts, game, evaluator, config.num_simulations)
        history.append(PlayHistory(
            canonical=game.canonicalized(),
            pi=mcts.probs(1.0, game.num_moves()),
            player=game.current_player(),
        ))
        temp = config.temperature if moves < config.temperature_move_threshold else 0.0
        move = mcts.pick_move(temp, game.num_moves())
        game.play_move(move)
        mcts.update_root(move)
        moves += 1

    scores = game.scores()
    if scores is None:
        logger.warning("Game hit max move limit (%d)", config.max_game_moves)
    for record in history:
        record.v = value_from_scores(scores, record.player) if scores is not None else 0.0

    logger.debug("Self-play game finished after %d moves, scores=%s", moves, scores)

    if not augment:
        return history
    records: List[PlayHistory] = []
    for record in history:
        records.extend(game.symmetries(record))
    return records


# ════════════════════════════════════════════════════════════════════
# §10  UTILITIES
# ════════════════════════════════════════════════════════════════════

def visit_conservation_errors(node: Node, path: str = "root") -> List[str]:
    """
    Return a message for every expanded node in the subtree where
    n != 1 + sum(child.n), or where virtual loss is still applied.
    """
    errors = []
    stack = [(node, path)]
    while stack:
        cur, where = stack.pop()
        if cur.pending or not math.isclose(cur.vloss, 0.0, abs_tol=1e-9):
            errors.append(f"{where}: {cur.pending} pending leaves, vloss={cur.vloss}")
        if cur.children:
            total = sum(c.n for c in cur.children)
            if cur.n != 1 + total:
                errors.append(f"{where}: n={cur.n} but 1 + sum(child.n)={1 + total}")
            for c in cur.children:
                stack.append((c, f"{where}/{c.move}"))
    return errors
