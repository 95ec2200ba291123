"""
tournament.py — Play matches between two players on a small board game.

Each player can be:
  - 'random'  (uniform random legal moves)
  - 'mcts'    (search with the uniform evaluator)
  - a model checkpoint written by NetworkEvaluator.save()
    (raw policy with --pN-sims 0, MCTS search otherwise)

Usage:
    # Plain MCTS vs random on Connect Four
    python tournament.py --p1 mcts --p1-sims 200 --p2 random --games 50

    # Tic-tac-toe, seats swapped every other game
    python tournament.py --game tictactoe --p1 mcts --p2 mcts --p2-sims 50 --swap

    # Checkpoint with batched search
    python tournament.py --p1 checkpoints/c4.pt --p1-sims 400 --batch 16 --p2 mcts
"""

import argparse
import logging
import os

import numpy as np

from connect4_gs import Connect4GS
from mcts_alphazero import (
    BatchedMCTS, MCTS, UniformEvaluator, run_batched_simulations, run_simulations,
)
from tictactoe_gs import TicTacToeGS

GAMES = {
    "connect4": Connect4GS,
    "tictactoe": TicTacToeGS,
}


def make_random_player(rng):
    """Returns a player function that picks uniformly at random."""
    def play(game):
        actions = np.flatnonzero(game.valid_moves())
        return int(actions[rng.integers(len(actions))])
    return play


def make_search_player(evaluator, num_moves, sims, cpuct=2.0, batch=0):
    """
    Returns a player function that searches `sims` simulations from
    scratch every move and plays the most visited move.
    batch > 0 uses BatchedMCTS with that many leaves per evaluator call.
    """
    def play(game):
        if batch > 0:
            mcts = BatchedMCTS(cpuct=cpuct, num_moves=num_moves)
            run_batched_simulations(mcts, game, evaluator, sims, batch_size=batch)
        else:
            mcts = MCTS(cpuct=cpuct, num_moves=num_moves)
            run_simulations(mcts, game, evaluator, sims)
        return mcts.pick_move(0.0)
    return play


def make_policy_player(evaluator):
    """Returns a player function that plays the network's top legal move."""
    def play(game):
        _, policy = evaluator.evaluate(game.canonicalized())
        policy = np.where(game.valid_moves() > 0, policy, -1.0)
        return int(np.argmax(policy))
    return play


def make_player(who, sims, game_cls, rng, batch=0):
    game = game_cls()
    if who == "random":
        return make_random_player(rng), "random"
    if who == "mcts":
        evaluator = UniformEvaluator(game.num_moves())
        return make_search_player(evaluator, game.num_moves(), sims, batch=batch), f"mcts({sims}sim)"

    from az_net import NetworkEvaluator

    evaluator = NetworkEvaluator.from_checkpoint(who)
    name = f"{os.path.basename(who)}({sims}sim)"
    if sims > 0:
        return make_search_player(evaluator, game.num_moves(), sims, batch=batch), name
    return make_policy_player(evaluator), name


def play_one_game(game_cls, p1_play, p2_play):
    """
    Play one game. Returns (scores, moves).
    P1 is always player 0, P2 is always player 1.
    """
    game = game_cls()
    players = [p1_play, p2_play]
    moves = 0

    while game.scores() is None:
        action = players[game.current_player()](game)
        game.play_move(action)
        moves += 1

    return game.scores(), moves


def main():
    parser = argparse.ArgumentParser(description="MCTS Tournament")
    parser.add_argument("--game", choices=sorted(GAMES), default="connect4",
                        help="Game to play (default: connect4)")
    parser.add_argument("--p1", type=str, required=True,
                        help="Player 1: 'random', 'mcts' or path to model checkpoint")
    parser.add_argument("--p2", type=str, required=True,
                        help="Player 2: 'random', 'mcts' or path to model checkpoint")
    parser.add_argument("--p1-sims", type=int, default=200,
                        help="MCTS sims for P1 (0 = raw policy for checkpoints, default: 200)")
    parser.add_argument("--p2-sims", type=int, default=200,
                        help="MCTS sims for P2 (0 = raw policy for checkpoints, default: 200)")
    parser.add_argument("--batch", type=int, default=0,
                        help="Leaves per evaluator call (0 = single-leaf search, default: 0)")
    parser.add_argument("--games", type=int, default=20,
                        help="Number of games (default: 20)")
    parser.add_argument("--swap", action="store_true",
                        help="Play each game twice with swapped seats (doubles game count)")
    parser.add_argument("--seed", type=int, default=None,
                        help="Seed for the random players")
    parser.add_argument("--verbose", action="store_true",
                        help="Log search details")
    args = parser.parse_args()
    if args.games < 1:
        parser.error(f"--games must be positive, got {args.games}")

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(asctime)s [%(levelname)s] %(message)s",
        datefmt="%H:%M:%S",
    )

    game_cls = GAMES[args.game]
    rng = np.random.default_rng(args.seed)
    p1_play, p1_name = make_player(args.p1, args.p1_sims, game_cls, rng, args.batch)
    p2_play, p2_name = make_player(args.p2, args.p2_sims, game_cls, rng, args.batch)

    print(f"{'=' * 60}")
    print(f"  {args.game} tournament — {args.games} games")
    print(f"  P1: {p1_name}")
    print(f"  P2: {p2_name}")
    if args.swap:
        print(f"  Seat swapping: ON (total {args.games * 2} games)")
    print(f"{'=' * 60}")
    print()

    p1_wins = 0
    p2_wins = 0
    draws = 0
    total_moves = 0

    matchups = [(p1_play, p2_play, False)]
    if args.swap:
        matchups.append((p2_play, p1_play, True))

    games_played = 0

    for _ in range(args.games):
        for seat0_play, seat1_play, swapped in matchups:
            scores, moves = play_one_game(game_cls, seat0_play, seat1_play)
            total_moves += moves
            games_played += 1

            # Map seats back to P1/P2
            p1_seat, p2_seat = (1, 0) if swapped else (0, 1)
            if scores[p1_seat] > 0:
                p1_wins += 1
            elif scores[p2_seat] > 0:
                p2_wins += 1
            else:
                draws += 1

            if games_played % 10 == 0:
                pct = p1_wins / games_played * 100
                print(f"  [{games_played}/{args.games * len(matchups)}] "
                      f"P1: {p1_wins}  P2: {p2_wins}  draws: {draws}  "
                      f"(P1 win rate: {pct:.1f}%)")

    total = p1_wins + p2_wins + draws
    avg_moves = total_moves / total

    print()
    print(f"{'=' * 60}")
    print(f"  RESULTS ({total} games)")
    print(f"{'=' * 60}")
    print(f"  P1 ({p1_name}):  {p1_wins} wins  ({p1_wins/total*100:.1f}%)")
    print(f"  P2 ({p2_name}):  {p2_wins} wins  ({p2_wins/total*100:.1f}%)")
    print(f"  Draws: {draws}  ({draws/total*100:.1f}%)")
    print(f"  Avg moves/game: {avg_moves:.0f}")
    print(f"{'=' * 60}")


if __name__ == "__main__":
    main()
