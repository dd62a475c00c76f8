# vecppo/rl/ppo_config.py

import math
from dataclasses import dataclass


@dataclass(frozen=True)
class PPOConfig:
    """
    Central configuration object for vectorized PPO + GAE.

    This file intentionally owns *all* RL hyperparameters.
    No magic numbers should appear inside trainers, buffers, or GAE code.
    """

    # Transition budget for the whole run (sum over all parallel envs)
    total_transition_budget: int = 1_000_000

    # Steps collected per environment in one window
    trajectory_length: int = 2048

    # Minibatching
    # - If num_minibatches is set it wins and batch_size is derived
    batch_size: int = 64
    num_minibatches: int | None = None
    num_epochs: int = 10

    # Discounting
    gamma: float = 0.99
    gae_lambda: float = 0.95

    # PPO clipping
    clip_eps: float = 0.2
    clip_value_loss: bool = False
    normalize_advantages: bool = True

    # KL control
    # - If target_kl is None, KL early-stop is disabled
    target_kl: float | None = 0.02
    kl_cutoff_multiplier: float = 1.5

    # Loss coefficients
    value_coef: float = 0.5
    # Entropy bonus: one float, or one coefficient per action head
    entropy_coef: float | tuple = 0.0

    # Optimization
    learning_rate: float = 3e-4
    lr_decay: bool = False
    # math.inf disables gradient-norm clipping
    max_grad_norm: float = 0.5

    seed: int = 0

    # Consecutive non-finite losses tolerated before a warning
    nonfinite_warn_after: int = 3

    def __post_init__(self):
        for name in ("total_transition_budget", "trajectory_length", "num_epochs", "nonfinite_warn_after"):
            if getattr(self, name) <= 0:
                raise ValueError(f"{name} must be positive, got {getattr(self, name)}")

        if self.num_minibatches is None:
            if self.batch_size <= 0:
                raise ValueError(f"batch_size must be positive, got {self.batch_size}")
        elif self.num_minibatches <= 0:
            raise ValueError(f"num_minibatches must be positive, got {self.num_minibatches}")

        if not 0.0 <= self.gamma <= 1.0:
            raise ValueError(f"gamma must lie in [0, 1], got {self.gamma}")
        if not 0.0 <= self.gae_lambda <= 1.0:
            raise ValueError(f"gae_lambda must lie in [0, 1], got {self.gae_lambda}")

        if not math.isfinite(self.clip_eps) or self.clip_eps <= 0.0:
            raise ValueError(f"clip_eps must be finite and positive, got {self.clip_eps}")

        if self.target_kl is not None and not self.target_kl > 0.0:
            raise ValueError(f"target_kl must be positive or None, got {self.target_kl}")
        if not math.isfinite(self.kl_cutoff_multiplier) or self.kl_cutoff_multiplier <= 0.0:
            raise ValueError(f"kl_cutoff_multiplier must be finite and positive, got {self.kl_cutoff_multiplier}")

        if self.value_coef < 0.0:
            raise ValueError(f"value_coef must be non-negative, got {self.value_coef}")
        coefs = self.entropy_coef if isinstance(self.entropy_coef, tuple) else (self.entropy_coef,)
        if any(c < 0.0 for c in coefs):
            raise ValueError(f"entropy_coef must be non-negative, got {self.entropy_coef}")

        if self.learning_rate < 0.0:
            raise ValueError(f"learning_rate must be non-negative, got {self.learning_rate}")
        if not self.max_grad_norm > 0.0:
            raise ValueError(f"max_grad_norm must be positive, got {self.max_grad_norm}")

        if self.normalize_advantages and self.num_minibatches is None and self.batch_size < 2:
            raise ValueError("normalize_advantages needs batch_size >= 2")

    def batch_size_for(self, num_transitions: int) -> int:
        """Resolve the minibatch size for a window of N·T transitions."""
        if self.num_minibatches is not None:
            if num_transitions % self.num_minibatches != 0:
                raise ValueError(
                    f"n_envs*trajectory_length={num_transitions} not divisible by "
                    f"num_minibatches={self.num_minibatches}"
                )
            batch_size = num_transitions // self.num_minibatches
        else:
            batch_size = self.batch_size
            if num_transitions % batch_size != 0:
                raise ValueError(
                    f"n_envs*trajectory_length={num_transitions} not divisible by batch_size={batch_size}"
                )

        if self.normalize_advantages and batch_size < 2:
            raise ValueError("normalize_advantages needs minibatches of at least 2 transitions")
        return batch_size


# ----------------------------
# Recommended presets
# ----------------------------

def make_discrete_config(**overrides) -> PPOConfig:
    """Defaults tuned for masked categorical policies."""
    params = dict(
        gamma=0.99,
        gae_lambda=0.95,
        clip_eps=0.2,
        # Enable KL early-stop to avoid occasional catastrophic PPO updates
        target_kl=0.01,
        kl_cutoff_multiplier=1.5,
        value_coef=0.5,
        entropy_coef=0.01,
        learning_rate=2.5e-4,
        lr_decay=True,
        max_grad_norm=0.5,
        num_epochs=4,
        trajectory_length=128,
        num_minibatches=4,
    )
    params.update(overrides)
    return PPOConfig(**params)


def make_continuous_config(**overrides) -> PPOConfig:
    """More conservative defaults for diagonal-Gaussian policies."""
    params = dict(
        gamma=0.99,
        gae_lambda=0.95,
        clip_eps=0.2,
        target_kl=0.02,
        kl_cutoff_multiplier=1.5,
        value_coef=0.5,
        # Continuous often needs smaller entropy bonus
        entropy_coef=0.0,
        learning_rate=3e-4,
        lr_decay=True,
        max_grad_norm=0.5,
        num_epochs=10,
        trajectory_length=2048,
        batch_size=64,
    )
    params.update(overrides)
    return PPOConfig(**params)
