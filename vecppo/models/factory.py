import gymnasium as gym
import numpy as np

from vecppo.models.ppo_actor_critic import PPOActorCritic
from vecppo.models.ppo_actor_critic_continuous import PPOActorCriticContinuous
from vecppo.models.ppo_actor_critic_hybrid import PPOActorCriticHybrid


def make_actor_critic(observation_space: gym.Space, action_space: gym.Space, hidden_dim: int = 64):
    """Pick a reference actor-critic from the (single-env) action space."""
    obs_dim = int(np.prod(observation_space.shape))

    if isinstance(action_space, gym.spaces.Discrete):
        return PPOActorCritic(obs_dim, int(action_space.n), hidden_dim=hidden_dim)

    if isinstance(action_space, gym.spaces.Box):
        if len(action_space.shape) != 1:
            raise ValueError(f"Box action spaces must be 1-D, got shape {action_space.shape}")
        return PPOActorCriticContinuous(obs_dim, action_space.shape[0], hidden_dim=hidden_dim)

    if isinstance(action_space, gym.spaces.Tuple):
        heads = action_space.spaces
        if (
            len(heads) == 2
            and isinstance(heads[0], gym.spaces.Discrete)
            and isinstance(heads[1], gym.spaces.Box)
            and len(heads[1].shape) == 1
        ):
            return PPOActorCriticHybrid(obs_dim, int(heads[0].n), heads[1].shape[0], hidden_dim=hidden_dim)

    raise ValueError(f"Action space is not Discrete, 1-D Box or Tuple(Discrete, Box): {action_space}")
