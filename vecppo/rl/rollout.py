# ============================================================
# rl/rollout.py
#
# Fill a RolloutBuffer with one window of N·T transitions.
#
# Each step stores the value of the state that FOLLOWS the
# transition (queried before any reset) as `next_values`, so GAE
# can bootstrap truncated episodes without a separate last value.
# ============================================================

from __future__ import annotations

from typing import NamedTuple, Optional

import torch

from vecppo.envs.multi_env import has_action_mask


class StateActionValue(NamedTuple):
    observation: torch.Tensor
    action_mask: Optional[torch.Tensor]
    action: torch.Tensor
    log_prob: torch.Tensor
    value: torch.Tensor


def get_state_action_value(env, policy, idxs: Optional[torch.Tensor] = None) -> StateActionValue:
    """
    Observe the env and query the policy for action / log-prob / value.

    If `idxs` (bool or integer index over envs) is given, only those
    sub-environments are observed and queried.
    """
    obs = torch.as_tensor(env.observe(), dtype=torch.float32)
    action_mask = None
    if has_action_mask(env):
        action_mask = torch.as_tensor(env.valid_action_mask(), dtype=torch.bool)

    if idxs is not None:
        obs = obs[idxs]
        if action_mask is not None:
            action_mask = action_mask[idxs]

    with torch.no_grad():
        action, log_prob, _, value = policy.act_batch(obs, action_mask)

    # Composite policies return one log-prob per head
    if isinstance(log_prob, (tuple, list)):
        log_prob = torch.stack(list(log_prob), dim=-1)

    return StateActionValue(obs, action_mask, action, log_prob, value.reshape(-1))


def _merge(carry: StateActionValue, fresh: StateActionValue, idxs: torch.Tensor) -> StateActionValue:
    """Replace the rows of `carry` at `idxs` with the freshly reset envs' rows."""
    merged = []
    for old, new in zip(carry, fresh):
        if old is None:
            merged.append(None)
            continue
        out = old.clone()
        out[idxs] = new.to(out.dtype)
        merged.append(out)
    return StateActionValue(*merged)


def collect(env, buffer, policy) -> None:
    """
    Run T vectorized steps and write every field of `buffer`.

    Sub-environments that terminate or truncate are reset individually;
    the others carry their already-queried next state forward.
    """
    buffer.reset()
    sav = get_state_action_value(env, policy)

    for t in range(buffer.traj_len):
        rewards = env.step(sav.action.cpu().numpy())
        terminated = torch.as_tensor(env.terminated(), dtype=torch.bool)
        truncated = torch.as_tensor(env.truncated(), dtype=torch.bool)

        # One-step-ahead query: bootstrap value for this transition
        next_sav = get_state_action_value(env, policy)

        buffer.send_to(
            t,
            observations=sav.observation,
            actions=sav.action,
            log_probs=sav.log_prob,
            values=sav.value,
            action_masks=sav.action_mask,
            rewards=torch.as_tensor(rewards, dtype=torch.float32),
            terminated=terminated,
            truncated=truncated,
            next_values=next_sav.value,
        )

        done = terminated | truncated
        if done.any():
            env.reset(done.numpy())
            fresh = get_state_action_value(env, policy, idxs=done)
            sav = _merge(next_sav, fresh, done)
        else:
            sav = next_sav
