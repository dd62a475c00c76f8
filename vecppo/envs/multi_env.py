# ============================================================
# envs/multi_env.py
#
# Vectorized wrapper over N Gymnasium environments, built on
# gymnasium.vector.SyncVectorEnv with autoreset disabled.
#
# The rollout loop decides which sub-environments to reset,
# after it has read the value of the state they ended in.
# ============================================================

from __future__ import annotations

from typing import Callable, Optional, Sequence

import gymnasium as gym
import numpy as np
from gymnasium.vector import AutoresetMode, SyncVectorEnv


def has_action_mask(env) -> bool:
    """
    True if `env` can report valid-action masks.

    Envs that declare `provides_action_mask` are taken at their word;
    otherwise a callable `valid_action_mask` is enough.
    """
    flag = getattr(env, "provides_action_mask", None)
    if flag is not None:
        return bool(flag)
    return callable(getattr(env, "valid_action_mask", None))


def _flat_size(space: gym.Space) -> int:
    if isinstance(space, gym.spaces.Discrete):
        return 1
    if isinstance(space, gym.spaces.Box):
        return int(np.prod(space.shape))
    raise ValueError(f"Unsupported action sub-space: {space}")


class MultiEnv:
    """
    N Gymnasium environments behind one batched interface.

    Contract:
      - reset(mask=None)  reset all, or only sub-envs where mask is True
      - step(actions)     -> rewards (N,)
      - observe()         -> observations (N, *obs_shape)
      - terminated()      -> bool (N,)
      - truncated()       -> bool (N,)
      - valid_action_mask() -> bool (N, num_actions), if the envs report
        `info["action_mask"]`

    Composite (Tuple) actions arrive packed as one float row per env,
    [discrete_index, c_0, ..., c_{A-1}], and are split per sub-space here.
    """

    def __init__(self, env_fns: Sequence[Callable[[], gym.Env]], seed: Optional[int] = None):
        if len(env_fns) == 0:
            raise ValueError("MultiEnv needs at least one environment")

        self.vec_env = SyncVectorEnv(list(env_fns), autoreset_mode=AutoresetMode.DISABLED)
        self.num_envs = self.vec_env.num_envs
        self.single_observation_space = self.vec_env.single_observation_space
        self.single_action_space = self.vec_env.single_action_space
        self._seed = seed

        n = self.num_envs
        self._obs = None
        self._masks = None
        self._has_mask = np.zeros(n, dtype=bool)
        self._terminated = np.zeros(n, dtype=bool)
        self._truncated = np.zeros(n, dtype=bool)
        self.provides_action_mask = False

    def __len__(self) -> int:
        return self.num_envs

    @property
    def flat_action_dim(self) -> int:
        space = self.single_action_space
        if isinstance(space, gym.spaces.Tuple):
            return sum(_flat_size(s) for s in space.spaces)
        return _flat_size(space)

    def _record_masks(self, infos: dict, rows: np.ndarray):
        """Overwrite cached mask rows from a batched info dict (`_action_mask` flags presence)."""
        if "action_mask" in infos:
            masks = np.asarray(infos["action_mask"], dtype=bool)
            present = np.asarray(infos["_action_mask"], dtype=bool) & rows
            if self._masks is None:
                self._masks = np.zeros_like(masks)
            self._masks[present] = masks[present]
            self._has_mask[rows] = present[rows]
        else:
            self._has_mask[rows] = False
        self.provides_action_mask = bool(self._has_mask.all())

    def _batched_actions(self, actions: np.ndarray):
        space = self.single_action_space

        if isinstance(space, gym.spaces.Discrete):
            return actions.reshape(self.num_envs).astype(np.int64)

        if isinstance(space, gym.spaces.Box):
            return actions.reshape(self.num_envs, *space.shape).astype(space.dtype)

        if isinstance(space, gym.spaces.Tuple):
            flat = actions.reshape(self.num_envs, -1)
            parts, start = [], 0
            for sub in space.spaces:
                size = _flat_size(sub)
                chunk = flat[:, start:start + size]
                if isinstance(sub, gym.spaces.Discrete):
                    parts.append(chunk[:, 0].astype(np.int64))
                else:
                    parts.append(chunk.reshape(self.num_envs, *sub.shape).astype(sub.dtype))
                start += size
            return tuple(parts)

        raise ValueError(f"Unsupported action space: {space}")

    def reset(self, mask=None):
        if mask is None:
            rows = np.ones(self.num_envs, dtype=bool)
            obs, infos = self.vec_env.reset(seed=self._seed)
            # Seed only the first reset; later resets continue each env's RNG stream
            self._seed = None
        else:
            rows = np.asarray(mask, dtype=bool).reshape(self.num_envs)
            if not rows.any():
                return
            obs, infos = self.vec_env.reset(options={"reset_mask": rows})

        self._obs = obs
        self._terminated[rows] = False
        self._truncated[rows] = False
        self._record_masks(infos, rows)

    def step(self, actions) -> np.ndarray:
        actions = np.asarray(actions)
        assert actions.shape[0] == self.num_envs, (
            f"expected {self.num_envs} actions, got {actions.shape[0]}"
        )

        obs, rewards, terminated, truncated, infos = self.vec_env.step(self._batched_actions(actions))
        self._obs = obs
        self._terminated = np.asarray(terminated, dtype=bool)
        self._truncated = np.asarray(truncated, dtype=bool)
        self._record_masks(infos, np.ones(self.num_envs, dtype=bool))

        return np.asarray(rewards, dtype=np.float32)

    def observe(self) -> np.ndarray:
        return np.array(self._obs, dtype=np.float32)

    def terminated(self) -> np.ndarray:
        return self._terminated.copy()

    def truncated(self) -> np.ndarray:
        return self._truncated.copy()

    def valid_action_mask(self) -> np.ndarray:
        if not self.provides_action_mask:
            raise AttributeError("environments do not report info['action_mask']")
        return self._masks.copy()

    def close(self):
        self.vec_env.close()
