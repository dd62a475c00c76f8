"""
Tests for rollout collection on MultiEnv(CorridorEnv).
"""

import pytest
import torch

from vecppo.envs.corridor_env import LEFT, STAY, CorridorEnv
from vecppo.envs.multi_env import MultiEnv
from vecppo.models.factory import make_actor_critic
from vecppo.rl.rollout import collect, get_state_action_value
from vecppo.rl.rollout_buffer import RolloutBuffer


class StayPolicy:
    """Always STAY; value = elapsed fraction of the step limit (last obs entry)."""

    num_heads = 1

    def __init__(self):
        self.rows_queried = 0

    def act_batch(self, obs, action_mask=None):
        n = obs.shape[0]
        self.rows_queried += n
        action = torch.full((n,), STAY, dtype=torch.long)
        return action, torch.zeros(n), torch.zeros(n), obs[:, -1].clone()


def _corridor_env(*kwargs_per_env):
    return MultiEnv([lambda kw=kw: CorridorEnv(**kw) for kw in kwargs_per_env], seed=0)


def test_only_finished_envs_are_reset_and_requeried():
    env = _corridor_env({"length": 5, "max_steps": 2}, {"length": 5, "max_steps": 5})
    env.reset()
    buffer = RolloutBuffer.for_env(env, traj_len=6)
    policy = StayPolicy()

    collect(env, buffer, policy)

    # env 0 truncates every 2 steps, env 1 once at step 5
    assert buffer.truncated[0].tolist() == [False, True, False, True, False, True]
    assert buffer.truncated[1].tolist() == [False, False, False, False, True, False]
    assert not buffer.terminated.any()

    # After its reset env 0 starts fresh; env 1 keeps counting
    assert buffer.observations[0, 2, -1].item() == 0.0
    assert buffer.observations[1, 2, -1].item() == pytest.approx(0.4)

    # next_value is the pre-reset terminal state's value
    assert buffer.next_values[0, 1].item() == 1.0
    assert buffer.values[0, 2].item() == 0.0

    # Initial query + one-step-ahead query per step + one row per reset env
    n_resets = int(buffer.truncated.sum())
    assert policy.rows_queried == 2 + 6 * 2 + n_resets


def test_next_value_is_carried_forward_within_an_episode():
    env = _corridor_env(*[{"length": 4, "max_steps": 3}] * 3)
    env.reset()
    torch.manual_seed(0)
    policy = make_actor_critic(env.single_observation_space, env.single_action_space, hidden_dim=8)
    buffer = RolloutBuffer.for_env(env, traj_len=10)

    collect(env, buffer, policy)

    done = buffer.terminated | buffer.truncated
    for i in range(3):
        for t in range(9):
            if not done[i, t]:
                assert buffer.next_values[i, t] == buffer.values[i, t + 1]
    assert done.any()


def test_action_masks_are_stored_and_respected():
    env = _corridor_env(*[{"length": 4, "max_steps": 6}] * 4)
    env.reset()
    torch.manual_seed(1)
    policy = make_actor_critic(env.single_observation_space, env.single_action_space, hidden_dim=8)
    buffer = RolloutBuffer.for_env(env, traj_len=12)

    collect(env, buffer, policy)

    at_start = buffer.observations[..., 0] == 1.0
    assert at_start.any()
    assert not buffer.action_masks[..., LEFT][at_start].any()
    assert buffer.action_masks[..., LEFT][~at_start].all()
    assert not (buffer.actions[at_start] == LEFT).any()


def test_state_action_value_subset_query():
    env = _corridor_env(*[{"length": 4}] * 3)
    env.reset()
    policy = StayPolicy()

    sav = get_state_action_value(env, policy, idxs=torch.tensor([True, False, True]))

    assert sav.observation.shape == (2, 5)
    assert sav.action_mask.shape == (2, 3)
    assert policy.rows_queried == 2


def test_hybrid_policy_stores_per_head_log_probs():
    env = _corridor_env(*[{"length": 4, "max_steps": 5, "hybrid": True}] * 2)
    env.reset()
    torch.manual_seed(0)
    policy = make_actor_critic(env.single_observation_space, env.single_action_space, hidden_dim=8)
    buffer = RolloutBuffer.for_env(env, traj_len=6, num_heads=policy.num_heads)

    collect(env, buffer, policy)

    assert buffer.actions.shape == (2, 6, 2)
    assert buffer.log_probs.shape == (2, 6, 2)
    assert (buffer.log_probs[..., 0] <= 0).all()
    assert set(buffer.actions[..., 0].long().unique().tolist()) <= {0, 1, 2}
