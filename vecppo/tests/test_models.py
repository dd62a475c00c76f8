import gymnasium as gym
import numpy as np
import pytest
import torch

from vecppo.models.factory import make_actor_critic
from vecppo.models.ppo_actor_critic import PPOActorCritic
from vecppo.models.ppo_actor_critic_continuous import PPOActorCriticContinuous
from vecppo.models.ppo_actor_critic_hybrid import PPOActorCriticHybrid

OBS = gym.spaces.Box(-1.0, 1.0, shape=(5,), dtype=np.float32)


def test_factory_picks_model_from_action_space():
    assert isinstance(make_actor_critic(OBS, gym.spaces.Discrete(3)), PPOActorCritic)
    assert isinstance(make_actor_critic(OBS, gym.spaces.Box(-1, 1, shape=(2,))), PPOActorCriticContinuous)
    hybrid = gym.spaces.Tuple((gym.spaces.Discrete(3), gym.spaces.Box(-1, 1, shape=(1,))))
    assert isinstance(make_actor_critic(OBS, hybrid), PPOActorCriticHybrid)

    with pytest.raises(ValueError):
        make_actor_critic(OBS, gym.spaces.MultiBinary(3))


def test_masked_actions_are_never_sampled():
    torch.manual_seed(0)
    model = PPOActorCritic(5, 3)
    obs = torch.randn(64, 5)
    mask = torch.tensor([[False, True, True]]).repeat(64, 1)

    action, log_prob, entropy, value = model.act_batch(obs, mask)

    assert (action != 0).all()
    assert log_prob.shape == (64,) and value.shape == (64,)
    new_log_prob, _, _ = model.evaluate_actions(obs, action, mask)
    torch.testing.assert_close(new_log_prob, log_prob)


def test_hybrid_model_returns_one_log_prob_per_head():
    torch.manual_seed(0)
    model = PPOActorCriticHybrid(5, 3, 2)
    obs = torch.randn(8, 5)

    action, log_prob, entropy, _ = model.act_batch(obs)

    assert action.shape == (8, 3)
    assert len(log_prob) == 2 and len(entropy) == 2
    new_log_prob, _, _ = model.evaluate_actions(obs, action)
    for old, new in zip(log_prob, new_log_prob):
        torch.testing.assert_close(new, old)
