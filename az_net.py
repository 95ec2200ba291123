"""
az_net.py — Policy-Value network evaluator for the MCTS core

Implements the Evaluator ABC from mcts_alphazero.py.
Architecture: residual MLP with separate policy and value heads, over
the flattened canonical tensor of any game.

    Input(C×H×W float32) → flatten → FC(hidden) → [ResBlock × N] → trunk(128)
      ├─ Policy: FC(num_moves) → softmax
      └─ Value:  FC(64) → FC(1) → tanh        (current player's view)

Device auto-detection: MPS (Apple Silicon) → CUDA → CPU

Weights come from a checkpoint written by save(); this module only
runs inference.
"""

import logging
import os
from typing import Sequence, Tuple

import numpy as np
import torch
import torch.nn as nn
import torch.nn.functional as F

from mcts_alphazero import Evaluator

logger = logging.getLogger(__name__)


# ════════════════════════════════════════════════════════════
# Network architecture
# ════════════════════════════════════════════════════════════

class ResBlock(nn.Module):
    """Residual block: FC → BN → ReLU → FC → BN + skip → ReLU."""
    def __init__(self, dim):
        super().__init__()
        self.fc1 = nn.Linear(dim, dim)
        self.bn1 = nn.BatchNorm1d(dim)
        self.fc2 = nn.Linear(dim, dim)
        self.bn2 = nn.BatchNorm1d(dim)

    def forward(self, x):
        out = F.relu(self.bn1(self.fc1(x)))
        out = self.bn2(self.fc2(out))
        return F.relu(out + x)


class PolicyValueNet(nn.Module):
    def __init__(self, input_shape: Sequence[int], num_moves: int, hidden=256, blocks=3):
        super().__init__()
        in_dim = int(np.prod(input_shape))
        self.input_fc = nn.Linear(in_dim, hidden)
        self.input_bn = nn.BatchNorm1d(hidden)
        self.res_blocks = nn.ModuleList([ResBlock(hidden) for _ in range(blocks)])
        self.trunk_fc = nn.Linear(hidden, 128)
        self.trunk_bn = nn.BatchNorm1d(128)

        # Policy head
        self.pol_fc = nn.Linear(128, num_moves)

        # Value head
        self.val_fc1 = nn.Linear(128, 64)
        self.val_fc2 = nn.Linear(64, 1)

    def forward(self, x):
        x = x.flatten(start_dim=1)
        x = F.relu(self.input_bn(self.input_fc(x)))
        for block in self.res_blocks:
            x = block(x)
        x = F.relu(self.trunk_bn(self.trunk_fc(x)))

        policy = F.softmax(self.pol_fc(x), dim=-1)
        value = torch.tanh(self.val_fc2(F.relu(self.val_fc1(x)))).squeeze(-1)
        return policy, value


# ════════════════════════════════════════════════════════════
# Evaluator interface implementation
# ════════════════════════════════════════════════════════════

def _auto_device():
    if hasattr(torch.backends, "mps") and torch.backends.mps.is_available():
        return "mps"
    if torch.cuda.is_available():
        return "cuda"
    return "cpu"


class NetworkEvaluator(Evaluator):
    """
    Evaluator backed by a PolicyValueNet.

    Args:
        input_shape: shape of one canonical tensor, e.g. (2, 6, 7)
        num_moves:   action space size (policy head width)
        hidden:      hidden layer width
        blocks:      number of residual blocks
        device:      "mps", "cuda", "cpu", or None for auto-detect
    """

    def __init__(self, input_shape, num_moves, hidden=256, blocks=3, device=None):
        self.device = torch.device(device or _auto_device())
        self.input_shape = tuple(int(d) for d in input_shape)
        self.num_moves = num_moves
        self.hidden = hidden
        self.blocks = blocks

        self.model = PolicyValueNet(self.input_shape, num_moves, hidden, blocks).to(self.device)
        self.model.eval()

    def _to_tensor(self, canonical: np.ndarray) -> torch.Tensor:
        t = torch.from_numpy(np.ascontiguousarray(canonical, dtype=np.float32)).to(self.device)
        if t.dim() == len(self.input_shape):
            t = t.unsqueeze(0)
        return t

    # ── Inference ──

    def evaluate(self, canonical: np.ndarray) -> Tuple[float, np.ndarray]:
        with torch.no_grad():
            policy, value = self.model(self._to_tensor(canonical))
        return float(value[0].item()), policy[0].cpu().numpy()

    def evaluate_batch(self, canonicals: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
        with torch.no_grad():
            policy, value = self.model(self._to_tensor(canonicals))
        return value.cpu().numpy(), policy.cpu().numpy()

    # ── Persistence ──

    def save(self, filepath: str) -> None:
        os.makedirs(os.path.dirname(filepath) or ".", exist_ok=True)
        torch.save({
            "model": self.model.state_dict(),
            "input_shape": list(self.input_shape),
            "num_moves": self.num_moves,
            "hidden": self.hidden,
            "blocks": self.blocks,
        }, filepath)

    def load(self, filepath: str) -> None:
        ckpt = torch.load(filepath, map_location=self.device, weights_only=True)
        if tuple(ckpt["input_shape"]) != self.input_shape or ckpt["num_moves"] != self.num_moves:
            raise ValueError(
                f"checkpoint {filepath} is for input {tuple(ckpt['input_shape'])} "
                f"and {ckpt['num_moves']} moves, evaluator has {self.input_shape} "
                f"and {self.num_moves}")
        self.model.load_state_dict(ckpt["model"])
        self.model.eval()
        logger.info("Loaded checkpoint %s", filepath)

    @classmethod
    def from_checkpoint(cls, filepath: str, device=None) -> "NetworkEvaluator":
        ckpt = torch.load(filepath, map_location="cpu", weights_only=True)
        net = cls(ckpt["input_shape"], ckpt["num_moves"],
                  hidden=ckpt["hidden"], blocks=ckpt["blocks"], device=device)
        net.load(filepath)
        return net


# ════════════════════════════════════════════════════════════
# Self-test
# ════════════════════════════════════════════════════════════

if __name__ == "__main__":
    import time

    from connect4_gs import Connect4GS

    gs = Connect4GS()
    net = NetworkEvaluator(gs.canonicalized().shape, gs.num_moves(), hidden=128, blocks=2)
    n_params = sum(p.numel() for p in net.model.parameters())
    print(f"Model: {n_params:,} params on {net.device}")

    obs = gs.canonicalized()
    val, pol = net.evaluate(obs)
    assert pol.shape == (gs.num_moves(),)
    assert abs(pol.sum() - 1.0) < 0.01
    assert -1 <= val <= 1
    print(f"evaluate:       policy sum={pol.sum():.4f}, value={val:.4f}")

    batch = np.stack([obs] * 32)
    vals, pols = net.evaluate_batch(batch)
    assert pols.shape == (32, gs.num_moves())
    assert vals.shape == (32,)
    print(f"evaluate_batch: policies={pols.shape}, values={vals.shape}")

    t0 = time.time()
    for _ in range(200):
        net.evaluate(obs)
    dt = time.time() - t0
    print(f"\n200 single evaluations: {dt:.3f}s ({dt/200*1000:.1f} ms each)")
