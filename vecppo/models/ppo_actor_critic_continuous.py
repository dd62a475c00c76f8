# ============================================================
# models/ppo_actor_critic_continuous.py
#
# PPO Actor–Critic (continuous actions)
#
# - Actor outputs a diagonal Gaussian; log-std is a learned
#   state-independent parameter
# - Critic outputs scalar V(s)
#
# NOTE:
# - `action_mask` is accepted for API compatibility but ignored
# ============================================================

from __future__ import annotations

import torch
import torch.nn as nn
from torch.distributions import Normal

from vecppo.models.ppo_actor_critic import mlp_backbone


LOG_STD_MIN = -5.0
LOG_STD_MAX = 1.0


class DiagGaussian:
    """Minimal diagonal Gaussian wrapper.

    Matches the discrete PPO interface expectations:
    - sample / log_prob / entropy
    - log_prob and entropy return shape (B,) by summing over dims
    """

    def __init__(self, mean: torch.Tensor, log_std: torch.Tensor):
        self.mean = mean
        self.log_std = torch.clamp(log_std, LOG_STD_MIN, LOG_STD_MAX)
        self.std = torch.exp(self.log_std)
        self.base = Normal(self.mean, self.std.expand_as(self.mean))

    def sample(self) -> torch.Tensor:
        return self.base.sample()

    def log_prob(self, action: torch.Tensor) -> torch.Tensor:
        # Batched scalar actions for A==1: (B,) -> (B,1)
        if action.dim() == 1 and self.mean.dim() == 2:
            action = action.unsqueeze(-1)
        return self.base.log_prob(action).sum(dim=-1)

    def entropy(self) -> torch.Tensor:
        return self.base.entropy().sum(dim=-1)


class PPOActorCriticContinuous(nn.Module):
    """PPO Actor–Critic network for a Box action space.

    Design assumptions:
    - Input is a flat observation vector
    - Continuous action is an unbounded vector (env clips to its bounds)
    - Shared backbone with separate actor and critic heads
    """

    num_heads = 1

    def __init__(self, obs_dim: int, action_dim: int, hidden_dim: int = 64, init_log_std: float = 0.0):
        super().__init__()

        self.obs_dim = obs_dim
        self.action_dim = action_dim

        self.backbone = mlp_backbone(obs_dim, hidden_dim)

        self.mu_head = nn.Linear(hidden_dim, action_dim)
        self.log_std = nn.Parameter(torch.full((action_dim,), float(init_log_std)))

        self.value_head = nn.Linear(hidden_dim, 1)

    def forward(self, obs: torch.Tensor):
        """
        Returns:
            mu:    Gaussian mean (batch_size, action_dim)
            value: State value estimate (batch_size,)
        """
        features = self.backbone(obs.reshape(obs.shape[0], -1))
        mu = self.mu_head(features)
        value = self.value_head(features).squeeze(-1)
        return mu, value

    def get_dist_and_value(self, obs: torch.Tensor, action_mask: torch.Tensor | None = None):
        mu, value = self.forward(obs)
        return DiagGaussian(mu, self.log_std), value

    def act_batch(self, obs: torch.Tensor, action_mask: torch.Tensor | None = None):
        """Sample actions for rollout collection.

        Returns:
            action:   (batch_size, action_dim) float
            log_prob: (batch_size,) float
            entropy:  (batch_size,) float
            value:    (batch_size,) float
        """
        dist, value = self.get_dist_and_value(obs, action_mask)
        action = dist.sample()
        return action, dist.log_prob(action), dist.entropy(), value

    def evaluate_actions(self, obs: torch.Tensor, actions: torch.Tensor, action_mask=None):
        """Compute log_probs/entropy/value for PPO updates (mirrors discrete)."""
        dist, value = self.get_dist_and_value(obs, action_mask)
        return dist.log_prob(actions), dist.entropy(), value
