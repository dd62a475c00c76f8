# ============================================================
# rl/rollout_buffer.py
#
# PPO Rollout Buffer (Parallel-Environment, preallocated)
#
# Storage layout is (N, T, ...): env index first, time second.
# The same tensors are reused for every collection window.
# ============================================================

from __future__ import annotations

from typing import Dict, Optional, Sequence

import gymnasium as gym
import torch

from vecppo.envs.multi_env import has_action_mask


class RolloutBuffer:
    """
    PPO Rollout Buffer (Vectorized Environments)

    It acts as a fixed-size arena between:
      - Environment rollouts (written column by column)
      - GAE (reads rewards / values / boundary flags)
      - PPO optimization (reads flattened minibatches)

    Responsibilities:
      - Preserve temporal order per environment
      - Preserve episode boundaries (terminated AND truncated flags)
      - Store the bootstrap value of the state that follows each transition
      - Hand out independent minibatch copies for PPO updates

    Non-responsibilities:
      - No advantage computation
      - No normalization
      - No model updates
    """

    # Fields indexed (N, T) with no trailing shape
    SCALAR_FIELDS = ("rewards", "values", "next_values", "terminated", "truncated")

    def __init__(
        self,
        num_envs: int,
        traj_len: int,
        obs_shape: Sequence[int],
        action_shape: Sequence[int] = (),
        action_dtype: torch.dtype = torch.long,
        mask_shape: Optional[Sequence[int]] = None,
        num_heads: int = 1,
        batch_size: Optional[int] = None,
    ):
        if num_envs <= 0 or traj_len <= 0:
            raise ValueError(f"num_envs and traj_len must be positive, got {num_envs}, {traj_len}")
        if batch_size is not None and (num_envs * traj_len) % batch_size != 0:
            raise ValueError(
                f"n_envs*traj_len={num_envs * traj_len} not divisible by batch_size={batch_size}"
            )

        self.num_envs = num_envs
        self.traj_len = traj_len
        self.num_heads = num_heads

        N, T = num_envs, traj_len
        log_prob_shape = () if num_heads == 1 else (num_heads,)

        self.observations = torch.zeros((N, T, *obs_shape), dtype=torch.float32)
        self.actions = torch.zeros((N, T, *action_shape), dtype=action_dtype)
        self.log_probs = torch.zeros((N, T, *log_prob_shape), dtype=torch.float32)
        self.rewards = torch.zeros((N, T), dtype=torch.float32)
        self.values = torch.zeros((N, T), dtype=torch.float32)
        self.next_values = torch.zeros((N, T), dtype=torch.float32)
        self.terminated = torch.zeros((N, T), dtype=torch.bool)
        self.truncated = torch.zeros((N, T), dtype=torch.bool)

        # Only allocated when the environment exposes valid-action masks
        self.action_masks = None
        if mask_shape is not None:
            self.action_masks = torch.zeros((N, T, *mask_shape), dtype=torch.bool)

    @classmethod
    def for_env(cls, env, traj_len: int, num_heads: int = 1, batch_size: Optional[int] = None) -> "RolloutBuffer":
        """Size a buffer from a vectorized environment's single spaces."""
        obs_shape = tuple(env.single_observation_space.shape)
        space = env.single_action_space

        if isinstance(space, gym.spaces.Discrete):
            action_shape, action_dtype = (), torch.long
        elif isinstance(space, gym.spaces.Box):
            action_shape, action_dtype = tuple(space.shape), torch.float32
        elif isinstance(space, gym.spaces.Tuple):
            # Composite actions are packed into one flat float row per transition
            action_shape, action_dtype = (env.flat_action_dim,), torch.float32
        else:
            raise ValueError(f"Unsupported action space: {space}")

        mask_shape = None
        if has_action_mask(env):
            mask_shape = tuple(env.valid_action_mask().shape[1:])

        return cls(
            num_envs=env.num_envs,
            traj_len=traj_len,
            obs_shape=obs_shape,
            action_shape=action_shape,
            action_dtype=action_dtype,
            mask_shape=mask_shape,
            num_heads=num_heads,
            batch_size=batch_size,
        )

    def __len__(self) -> int:
        return self.num_envs * self.traj_len

    @property
    def fields(self) -> Dict[str, torch.Tensor]:
        out = {
            "observations": self.observations,
            "actions": self.actions,
            "log_probs": self.log_probs,
            "rewards": self.rewards,
            "values": self.values,
            "next_values": self.next_values,
            "terminated": self.terminated,
            "truncated": self.truncated,
        }
        if self.action_masks is not None:
            out["action_masks"] = self.action_masks
        return out

    def reset(self):
        """Overwrite every field in place (no reallocation)."""
        for tensor in self.fields.values():
            tensor.zero_()

    def send_to(self, t: int, **columns: torch.Tensor):
        """
        Write one timestep of data from N parallel environments into column t.

        Each keyword must name a buffer field; values are (N, ...) batches.
        """
        assert 0 <= t < self.traj_len, f"time index {t} outside [0, {self.traj_len})"

        fields = self.fields
        for key, value in columns.items():
            if value is None:
                continue
            assert key in fields, f"unknown buffer field: {key}"
            dst = fields[key][:, t]
            value = torch.as_tensor(value).detach().to(device="cpu")
            if key in self.SCALAR_FIELDS or key == "log_probs":
                value = value.reshape(dst.shape)
            assert value.shape == dst.shape, (
                f"{key}: expected shape {tuple(dst.shape)}, got {tuple(value.shape)}"
            )
            dst.copy_(value)

    def flat(self) -> Dict[str, torch.Tensor]:
        """Views of every field with (N, T) collapsed to N·T."""
        return {key: value.flatten(0, 1) for key, value in self.fields.items()}

    def minibatch(
        self,
        idxs: torch.Tensor,
        advantages: torch.Tensor,
        value_targets: torch.Tensor,
    ) -> Dict[str, torch.Tensor]:
        """
        Gather an independent copy of the transitions at flat indices `idxs`.

        The copy matters: advantage normalization mutates the minibatch
        in place and must not leak into the buffer or other minibatches.
        """
        batch = dict(self.flat())
        batch["advantages"] = advantages.flatten(0, 1)
        batch["value_targets"] = value_targets.flatten(0, 1)
        return {key: value[idxs].clone() for key, value in batch.items()}
