# ============================================================
# models/ppo_actor_critic_hybrid.py
#
# PPO Actor–Critic with a composite action:
#   (discrete choice, continuous parameter vector)
#
# Actions are packed into one float row per transition:
#   [discrete_index, c_0, ..., c_{A-1}]
# log_prob / entropy are returned per head as a tuple so the
# trainer can reduce them head by head.
# ============================================================

from __future__ import annotations

import torch
import torch.nn as nn
from torch.distributions import Categorical

from vecppo.models.ppo_actor_critic import mlp_backbone
from vecppo.models.ppo_actor_critic_continuous import DiagGaussian


class PPOActorCriticHybrid(nn.Module):
    num_heads = 2

    def __init__(self, obs_dim: int, num_actions: int, action_dim: int, hidden_dim: int = 64):
        super().__init__()

        self.obs_dim = obs_dim
        self.num_actions = num_actions
        self.action_dim = action_dim

        self.backbone = mlp_backbone(obs_dim, hidden_dim)
        self.policy_head = nn.Linear(hidden_dim, num_actions)
        self.mu_head = nn.Linear(hidden_dim, action_dim)
        self.log_std = nn.Parameter(torch.zeros(action_dim))
        self.value_head = nn.Linear(hidden_dim, 1)

    def get_dists_and_value(self, obs: torch.Tensor, action_mask: torch.Tensor | None = None):
        features = self.backbone(obs.reshape(obs.shape[0], -1))

        logits = self.policy_head(features)
        if action_mask is not None:
            logits = logits.masked_fill(~action_mask.to(torch.bool), -1e9)

        discrete = Categorical(logits=logits)
        continuous = DiagGaussian(self.mu_head(features), self.log_std)
        value = self.value_head(features).squeeze(-1)
        return discrete, continuous, value

    def split_actions(self, actions: torch.Tensor):
        return actions[:, 0].long(), actions[:, 1:]

    def act_batch(self, obs: torch.Tensor, action_mask: torch.Tensor | None = None):
        discrete, continuous, value = self.get_dists_and_value(obs, action_mask)

        a_d = discrete.sample()
        a_c = continuous.sample()
        action = torch.cat([a_d.unsqueeze(-1).float(), a_c], dim=-1)

        log_prob = (discrete.log_prob(a_d), continuous.log_prob(a_c))
        entropy = (discrete.entropy(), continuous.entropy())
        return action, log_prob, entropy, value

    def evaluate_actions(self, obs: torch.Tensor, actions: torch.Tensor, action_mask=None):
        discrete, continuous, value = self.get_dists_and_value(obs, action_mask)
        a_d, a_c = self.split_actions(actions)

        log_prob = (discrete.log_prob(a_d), continuous.log_prob(a_c))
        entropy = (discrete.entropy(), continuous.entropy())
        return log_prob, entropy, value
