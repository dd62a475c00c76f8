# Neural PPO Network only!  (no storage of transitions, no PPO update logic -> see vecppo/rl)

import torch
import torch.nn as nn
from torch.distributions import Categorical


def mlp_backbone(obs_dim: int, hidden_dim: int) -> nn.Sequential:
    """Small shared MLP used by every reference actor-critic."""
    return nn.Sequential(
        nn.Linear(obs_dim, hidden_dim),
        nn.Tanh(),
        nn.Linear(hidden_dim, hidden_dim),
        nn.Tanh(),
    )


class PPOActorCritic(nn.Module):
    """
    PPO Actor–Critic network for a discrete action space.

    Design assumptions:
    - Input is a flat observation vector
    - Discrete action space with `num_actions` choices, optionally masked
    - Shared backbone with separate policy and value heads
    """

    num_heads = 1

    def __init__(self, obs_dim: int, num_actions: int, hidden_dim: int = 64):
        super().__init__()

        self.obs_dim = obs_dim
        self.num_actions = num_actions

        self.backbone = mlp_backbone(obs_dim, hidden_dim)

        # Outputs unnormalized logits for a categorical distribution
        self.policy_head = nn.Linear(hidden_dim, num_actions)

        # Outputs a scalar state-value estimate V(s)
        self.value_head = nn.Linear(hidden_dim, 1)

    def forward(self, obs: torch.Tensor):
        """
        Args:
            obs: Tensor of shape (batch_size, obs_dim)

        Returns:
            logits: Action logits for categorical policy
            value:  State value estimate (batch_size,)
        """
        features = self.backbone(obs.reshape(obs.shape[0], -1))

        logits = self.policy_head(features)
        value = self.value_head(features).squeeze(-1)

        return logits, value

    def _masked_dist(self, logits: torch.Tensor, action_mask: torch.Tensor | None):
        """
        Create a categorical distribution.
        If action_mask is None, behave like standard PPO (no masking).
        """
        if action_mask is None:
            return Categorical(logits=logits)

        mask = action_mask.to(torch.bool)
        masked_logits = logits.masked_fill(~mask, -1e9)
        return Categorical(logits=masked_logits)

    def get_dist_and_value(self, obs: torch.Tensor, action_mask: torch.Tensor | None = None):
        logits, value = self.forward(obs)
        dist = self._masked_dist(logits, action_mask)
        return dist, value

    def act_batch(self, obs: torch.Tensor, action_mask: torch.Tensor | None = None):
        """
        Sample an action from the current masked policy.

        Used during rollout collection.

        Returns:
            action:   Sampled discrete action (batch_size,)
            log_prob: Log-probability of sampled action
            entropy:  Policy entropy at obs
            value:    State value estimate
        """
        dist, value = self.get_dist_and_value(obs, action_mask)

        action = dist.sample()
        log_prob = dist.log_prob(action)

        return action, log_prob, dist.entropy(), value

    def evaluate_actions(self, obs: torch.Tensor, actions: torch.Tensor, action_mask=None):
        dist, value = self.get_dist_and_value(obs, action_mask)

        log_probs = dist.log_prob(actions.long())
        entropy = dist.entropy()

        return log_probs, entropy, value
