# vecppo/rl/solver.py

"""
Vectorized PPO training driver

- Reset envs, then repeat until the transition budget is spent:
  collect N·T transitions -> GAE -> epochs of minibatch updates
  (with KL early stop) -> log diagnostics
- Optional linear learning-rate decay, applied once per window
- All mutable run state lives on one TrainingContext
"""

from __future__ import annotations

import random
import time
from dataclasses import dataclass, field
from typing import Optional

import numpy as np
import torch

from vecppo.rl.metrics import MetricsLog, write_log_json
from vecppo.rl.optim import GradientOptimizer
from vecppo.rl.ppo_config import PPOConfig
from vecppo.rl.ppo_trainer import NonFiniteWatch, train_epochs
from vecppo.rl.rollout import collect
from vecppo.rl.rollout_buffer import RolloutBuffer
from vecppo.rl.sampler import MinibatchSampler


# ============================================================
# Utilities
# ============================================================
# Set deterministic seeds for reproducible runs.

def set_seed(seed: int):
    random.seed(seed)
    np.random.seed(seed)
    torch.manual_seed(seed)


def linear_lr(learning_rate: float, elapsed: int, total: int) -> float:
    """Linear decay from `learning_rate` at 0 transitions to 0 at `total`."""
    return learning_rate * max(0.0, 1.0 - elapsed / total)


def check_setup(env, policy, config: PPOConfig) -> int:
    """
    Validate config against the env and policy shapes; returns N·T.

    Raises ValueError on a bad minibatch split, a budget smaller than one
    window, or per-head entropy coefficients that do not match the policy.
    """
    n_transitions = env.num_envs * config.trajectory_length
    config.batch_size_for(n_transitions)
    if config.total_transition_budget < n_transitions:
        raise ValueError(
            f"total_transition_budget={config.total_transition_budget} is smaller than one "
            f"collection window of {n_transitions} transitions"
        )

    num_heads = getattr(policy, "num_heads", 1)
    if isinstance(config.entropy_coef, tuple) and len(config.entropy_coef) != num_heads:
        raise ValueError(
            f"entropy_coef has {len(config.entropy_coef)} coefficients but the policy has {num_heads} action heads"
        )
    return n_transitions


# ============================================================
# Training context
# ============================================================

@dataclass
class TrainingContext:
    """Everything one training run mutates. Lifetime: exactly one run."""

    env: object
    policy: torch.nn.Module
    optimizer: GradientOptimizer
    buffer: RolloutBuffer
    sampler: MinibatchSampler
    config: PPOConfig
    metrics: MetricsLog = field(default_factory=MetricsLog)
    watch: Optional[NonFiniteWatch] = None
    global_step: int = 0
    start_time: float = field(default_factory=time.time)

    @property
    def transitions_per_window(self) -> int:
        return len(self.buffer)

    @classmethod
    def create(cls, env, policy, config: PPOConfig, optimizer: Optional[GradientOptimizer] = None):
        """
        Build the run state for an env that has already been reset.

        Raises ValueError under the same conditions as `check_setup`.
        """
        n_transitions = check_setup(env, policy, config)
        batch_size = config.batch_size_for(n_transitions)

        buffer = RolloutBuffer.for_env(
            env,
            config.trajectory_length,
            num_heads=getattr(policy, "num_heads", 1),
            batch_size=batch_size,
        )
        generator = torch.Generator().manual_seed(config.seed)
        sampler = MinibatchSampler(len(buffer), batch_size, generator)

        if optimizer is None:
            optimizer = GradientOptimizer(policy.parameters(), config.learning_rate)

        return cls(
            env=env,
            policy=policy,
            optimizer=optimizer,
            buffer=buffer,
            sampler=sampler,
            config=config,
            watch=NonFiniteWatch(config.nonfinite_warn_after),
        )


def run_window(ctx: TrainingContext) -> dict:
    """One Collecting -> Updating -> Logging cycle."""
    config = ctx.config

    collect(ctx.env, ctx.buffer, ctx.policy)
    ctx.global_step += ctx.transitions_per_window

    # Decay counts the window just collected
    if config.lr_decay:
        learning_rate = linear_lr(config.learning_rate, ctx.global_step, config.total_transition_budget)
    else:
        learning_rate = config.learning_rate
    ctx.optimizer.set_learning_rate(learning_rate)

    stats = train_epochs(ctx.policy, ctx.optimizer, ctx.buffer, config, ctx.sampler, ctx.watch)

    extra = {}
    log_std = getattr(ctx.policy, "log_std", None)
    if isinstance(log_std, torch.Tensor):
        extra["log_std"] = log_std.detach().cpu().tolist()

    ctx.metrics(
        ctx.global_step,
        learning_rate=learning_rate,
        wall_time=time.time() - ctx.start_time,
        mean_reward=ctx.buffer.rewards.mean().item(),
        **stats,
        **extra,
    )
    return stats


# ============================================================
# Training loop
# ============================================================

def solve(
    env,
    policy,
    config: PPOConfig,
    optimizer: Optional[GradientOptimizer] = None,
    verbose: bool = True,
    log_path: Optional[str] = None,
):
    """
    Train `policy` on the vectorized `env` until `total_transition_budget`
    transitions have been collected.

    Returns:
        (policy, metrics) where metrics maps name -> (steps, values).
    """
    # Fail fast before touching the environment
    n_transitions = check_setup(env, policy, config)

    set_seed(config.seed)
    env.reset()

    ctx = TrainingContext.create(env, policy, config, optimizer)
    n_windows = config.total_transition_budget // n_transitions

    if verbose:
        print(
            f"[Config] n_envs={env.num_envs} traj_len={config.trajectory_length} "
            f"batch_size={ctx.sampler.batch_size} windows={n_windows}"
        )

    for _ in range(n_windows):
        stats = run_window(ctx)

        if log_path is not None:
            write_log_json(log_path, ctx.metrics.to_dict())

        if verbose:
            print(
                f"[Step:{ctx.global_step:08d}] "
                f"reward={ctx.metrics.last('mean_reward'):.4f} "
                f"policy_loss={stats.get('policy_loss', float('nan')):.4f} "
                f"value_loss={stats.get('value_loss', float('nan')):.4f} "
                f"kl={stats.get('kl_est', float('nan')):.5f} "
                f"clipfrac={stats.get('clip_frac', float('nan')):.3f} "
                f"epochs={stats['epochs']}" + (" (early stop)" if stats["early_stopped"] else "")
            )

    return policy, ctx.metrics
