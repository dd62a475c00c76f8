# ============================================================
#
# CorridorEnv
#
# Gymnasium-compatible 1-D corridor used to exercise the PPO
# loop end to end (termination, truncation, action masks).
#
# ============================================================

from typing import Any, Dict, Optional, Tuple

import gymnasium as gym
import numpy as np
from gymnasium import spaces


LEFT = 0
STAY = 1
RIGHT = 2


class CorridorEnv(gym.Env):
    """
    Walk from cell 0 to the goal at cell `length - 1`.

    Observation:
      - one-hot position (ℝ^length) + elapsed fraction of the step limit

    Actions:
      - LEFT / STAY / RIGHT (LEFT is masked out at cell 0)
      - hybrid=True adds a continuous "effort" in [-1, 1] that is
        penalized quadratically

    Episode end:
      - terminated when the goal is reached (+1 reward)
      - truncated after `max_steps` steps
    """

    metadata = {"render_modes": []}

    def __init__(
        self,
        length: int = 6,
        max_steps: int = 20,
        step_penalty: float = 0.01,
        hybrid: bool = False,
        effort_penalty: float = 0.05,
    ):
        super().__init__()
        assert length >= 2, "corridor needs at least two cells"
        assert max_steps >= 1

        self.length = length
        self.max_steps = max_steps
        self.step_penalty = float(step_penalty)
        self.hybrid = bool(hybrid)
        self.effort_penalty = float(effort_penalty)

        self.observation_space = spaces.Box(0.0, 1.0, shape=(length + 1,), dtype=np.float32)
        move = spaces.Discrete(3)
        if self.hybrid:
            self.action_space = spaces.Tuple((move, spaces.Box(-1.0, 1.0, shape=(1,), dtype=np.float32)))
        else:
            self.action_space = move

        self.position = 0
        self.steps = 0

    def _obs(self) -> np.ndarray:
        obs = np.zeros(self.length + 1, dtype=np.float32)
        obs[self.position] = 1.0
        obs[-1] = self.steps / self.max_steps
        return obs

    def action_mask(self) -> np.ndarray:
        mask = np.ones(3, dtype=bool)
        if self.position == 0:
            mask[LEFT] = False
        return mask

    def _info(self) -> Dict[str, Any]:
        return {"action_mask": self.action_mask(), "position": self.position}

    def reset(self, *, seed: Optional[int] = None, options: Optional[dict] = None):
        super().reset(seed=seed)
        self.position = int((options or {}).get("start", 0))
        self.steps = 0
        return self._obs(), self._info()

    def step(self, action) -> Tuple[np.ndarray, float, bool, bool, Dict[str, Any]]:
        if self.hybrid:
            move, effort = action
            effort = float(np.clip(np.asarray(effort).reshape(-1)[0], -1.0, 1.0))
        else:
            move, effort = action, 0.0
        move = int(move)

        if move == LEFT:
            self.position = max(0, self.position - 1)
        elif move == RIGHT:
            self.position = min(self.length - 1, self.position + 1)

        self.steps += 1

        terminated = self.position == self.length - 1
        truncated = (not terminated) and self.steps >= self.max_steps

        reward = 1.0 if terminated else -self.step_penalty
        reward -= self.effort_penalty * effort ** 2

        return self._obs(), float(reward), bool(terminated), bool(truncated), self._info()
