#!/usr/bin/env python3
"""
check_invariants.py — Invariant-checking harness for the MCTS core.

Plays random games and, every few moves, runs a search from the position
reached with both the single-leaf and the batched controller. After each
search the whole tree is walked against the game rules and the structural
invariants are asserted. Any violation is reported with full context
(game, seed, move number, tree path) so it can be reproduced.

Invariants checked:
  - visit conservation: n == 1 + sum(child.n) on every expanded node
  - no pending leaves or virtual loss once every leaf is processed
  - children are exactly the legal moves, in increasing order
  - terminal nodes are childless and match scores()
  - node.player matches current_player() of the replayed position
  - probs() sums to 1 and only covers legal moves
  - the searched position is untouched by the search
  - the same seed gives the same tree

Usage:
    python check_invariants.py                    # default: 50 games per game type
    python check_invariants.py --games 500        # more games
    python check_invariants.py --game tictactoe   # only one game
    python check_invariants.py --sims 400         # deeper searches
    python check_invariants.py --verbose          # print every move
"""

import argparse
import sys
import time
import traceback

import numpy as np

from connect4_gs import Connect4GS
from mcts_alphazero import (
    BatchedMCTS, Evaluator, MCTS, run_batched_simulations, run_simulations,
    visit_conservation_errors,
)
from tictactoe_gs import TicTacToeGS

GAMES = {
    "connect4": Connect4GS,
    "tictactoe": TicTacToeGS,
}


class NoisyEvaluator(Evaluator):
    """Random value in [-1, 1] and a Dirichlet(1) policy, from a seeded generator."""

    def __init__(self, num_moves, seed):
        self.num_moves = num_moves
        self.rng = np.random.default_rng(seed)

    def evaluate(self, canonical):
        value = float(self.rng.uniform(-1.0, 1.0))
        policy = self.rng.dirichlet(np.ones(self.num_moves)).astype(np.float32)
        return value, policy


# ════════════════════════════════════════════════════════════════
#  Tree invariants
# ════════════════════════════════════════════════════════════════

class TreeChecker:
    """Checks all structural invariants of a search tree rooted at `gs`."""

    def __init__(self, mcts, gs, context=""):
        self.mcts = mcts
        self.gs = gs
        self.ctx = context
        self.errors = []

    def _fail(self, msg):
        self.errors.append(msg)

    def _check(self, cond, msg):
        if not cond:
            self._fail(msg)

    # ── Counts ──

    def check_conservation(self):
        for msg in visit_conservation_errors(self.mcts.root):
            self._fail(msg)

    def check_root(self):
        root = self.mcts.root
        self._check(root.n == self.mcts.depth(),
                    f"root.n={root.n} but depth()={self.mcts.depth()}")

    # ── Tree vs rules ──

    def check_against_rules(self):
        stack = [(self.mcts.root, self.gs.copy(), "root")]
        while stack:
            node, state, where = stack.pop()

            if node.player >= 0:
                self._check(node.player == state.current_player(),
                            f"{where}: player={node.player} but position has "
                            f"p{state.current_player()} to move")

            if node.terminal:
                self._check(state.scores() is not None,
                            f"{where}: marked terminal but scores() is None")
                self._check(not node.children,
                            f"{where}: terminal node has {len(node.children)} children")
                continue

            if not node.children:
                continue

            moves = [c.move for c in node.children]
            legal = [int(m) for m in np.flatnonzero(state.valid_moves())]
            self._check(moves == legal,
                        f"{where}: children {moves} != legal moves {legal}")
            for child in node.children:
                self._check(child.policy >= 0,
                            f"{where}/{child.move}: negative prior {child.policy}")
                nxt = state.copy()
                nxt.play_move(child.move)
                stack.append((child, nxt, f"{where}/{child.move}"))

    # ── Move selection ──

    def check_probs(self):
        if not self.mcts.root.children:
            return
        probs = self.mcts.probs(1.0)
        self._check(abs(float(probs.sum()) - 1.0) < 1e-5,
                    f"probs(1) sums to {probs.sum():.6f}")
        illegal = np.flatnonzero((probs > 0) & (self.gs.valid_moves() == 0))
        self._check(len(illegal) == 0, f"probs(1) covers illegal moves {illegal.tolist()}")

        move = self.mcts.pick_move(0.0)
        counts = {c.move: c.n for c in self.mcts.root.children}
        self._check(counts[move] == max(counts.values()),
                    f"pick_move(0)={move} with n={counts[move]}, max is {max(counts.values())}")

    def run_all(self):
        self.check_conservation()
        self.check_root()
        self.check_against_rules()
        self.check_probs()
        return self.errors


# ════════════════════════════════════════════════════════════════
#  Search isolation and determinism
# ════════════════════════════════════════════════════════════════

def search(gs, sims, seed, batch=0):
    evaluator = NoisyEvaluator(gs.num_moves(), seed)
    if batch > 0:
        mcts = BatchedMCTS(cpuct=2.0, num_moves=gs.num_moves())
        run_batched_simulations(mcts, gs, evaluator, sims, batch_size=batch)
    else:
        mcts = MCTS(cpuct=2.0, num_moves=gs.num_moves())
        run_simulations(mcts, gs, evaluator, sims)
    return mcts


def isolation_check(gs, sims, seed):
    """The searched position must be unchanged by the search."""
    before = gs.copy()
    search(gs, sims, seed)
    if gs != before or gs.current_turn() != before.current_turn():
        return False, "search mutated the caller's position"
    return True, "OK"


def deterministic_search_check(gs, sims, seed):
    """Two searches with the same evaluator seed must give identical root counts."""
    a = search(gs, sims, seed)
    b = search(gs, sims, seed)
    counts_a = [(c.move, c.n) for c in a.root.children]
    counts_b = [(c.move, c.n) for c in b.root.children]
    if counts_a != counts_b:
        return False, f"Non-deterministic! {counts_a} vs {counts_b}"
    return True, "OK"


# ════════════════════════════════════════════════════════════════
#  Main game loop with invariant checking
# ════════════════════════════════════════════════════════════════

def play_checked_game(game_name, seed, sims, batch, every=3, verbose=False):
    """
    Play one random game, searching and checking every `every` moves.
    Returns (searches, move_count, errors_list).
    """
    gs = GAMES[game_name]()
    rng = np.random.default_rng(seed)
    errors = []
    searches = 0
    moves = 0

    def ctx():
        return f"[{game_name} seed={seed} move={moves} p{gs.current_player()}]"

    while gs.scores() is None:
        if moves % every == 0:
            for label, b in (("single", 0), ("batched", batch)):
                mcts = search(gs, sims, seed + moves, batch=b)
                checker = TreeChecker(mcts, gs, ctx())
                for e in checker.run_all():
                    errors.append(f"{ctx()} {label}: {e}")
                searches += 1

            ok, msg = isolation_check(gs, max(sims // 4, 1), seed)
            if not ok:
                errors.append(f"{ctx()}: {msg}")

        acts = np.flatnonzero(gs.valid_moves())
        if len(acts) == 0:
            errors.append(f"{ctx()}: no legal moves in a running game")
            break
        action = int(acts[rng.integers(len(acts))])
        if verbose:
            print(f"  {ctx()} MOVE={action} (of {len(acts)} legal)")
        gs.play_move(action)
        moves += 1

        if len(errors) > 50:
            errors.append("(too many errors, stopping early)")
            break

    return searches, moves, errors


# ════════════════════════════════════════════════════════════════
#  Main
# ════════════════════════════════════════════════════════════════

def main():
    parser = argparse.ArgumentParser(description="MCTS invariant checker")
    parser.add_argument("--games", type=int, default=50,
                        help="Number of games per game type (default: 50)")
    parser.add_argument("--game", choices=sorted(GAMES), default=None,
                        help="Only test this game (default: all)")
    parser.add_argument("--sims", type=int, default=100,
                        help="Simulations per search (default: 100)")
    parser.add_argument("--batch", type=int, default=8,
                        help="Leaves per round for the batched search (default: 8)")
    parser.add_argument("--seed", type=int, default=1000,
                        help="Starting seed (default: 1000)")
    parser.add_argument("--verbose", action="store_true",
                        help="Print every move")
    args = parser.parse_args()

    game_names = [args.game] if args.game else sorted(GAMES)
    all_errors = []
    total_games = 0
    total_searches = 0

    print("=" * 70)
    print("  MCTS Invariant Checker")
    print("=" * 70)
    print(f"  Games per game type: {args.games}")
    print(f"  Game types: {game_names}")
    print(f"  Simulations per search: {args.sims} (batch {args.batch})")
    print(f"  Starting seed: {args.seed}")
    print("=" * 70)
    print()

    for name in game_names:
        t0 = time.time()
        game_errors = []
        game_searches = 0

        for i in range(args.games):
            seed = args.seed + i
            try:
                searches, moves, errs = play_checked_game(
                    name, seed, args.sims, args.batch, verbose=args.verbose)
            except Exception as e:
                errs = [f"EXCEPTION: {e}\n{traceback.format_exc()}"]
                searches = 0

            for e in errs:
                game_errors.append(f"[{name} seed={seed}] {e}")
            if errs and len(game_errors) <= 5:
                for e in errs[:3]:
                    print(f"  ✗ [{name} seed={seed}] {e}")

            game_searches += searches
            total_games += 1

        dt = time.time() - t0
        status = "✓ PASS" if not game_errors else f"✗ FAIL ({len(game_errors)} errors)"
        print(f"{name}: {args.games} games, {game_searches} searches, {dt:.1f}s — {status}")

        total_searches += game_searches
        all_errors.extend(game_errors)

    # Deterministic search
    print(f"\nDeterministic search check...")
    for name in game_names:
        gs = GAMES[name]()
        for seed in [args.seed, args.seed + 1, args.seed + 7]:
            ok, msg = deterministic_search_check(gs, args.sims, seed)
            if not ok:
                err = f"Determinism [{name} seed={seed}]: {msg}"
                all_errors.append(err)
                print(f"  ✗ {err}")
    if not any("Determinism" in e for e in all_errors):
        print("  ✓ All determinism checks passed")

    # Summary
    print()
    print("=" * 70)
    if all_errors:
        print(f"  FAILED — {len(all_errors)} invariant violation(s) found")
        print("=" * 70)
        seen = set()
        for e in all_errors:
            key = e.split("]")[-1].strip() if "]" in e else e
            if key not in seen:
                seen.add(key)
                print(f"  {e}")
            if len(seen) >= 30:
                remaining = len(all_errors) - len(seen)
                if remaining > 0:
                    print(f"  ... and {remaining} more (possibly duplicates)")
                break
        return 1
    else:
        print(f"  ALL PASSED — {total_games} games, "
              f"{total_searches} searches, 0 invariant violations")
        print("=" * 70)
        return 0


if __name__ == "__main__":
    sys.exit(main())
